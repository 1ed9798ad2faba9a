from __future__ import annotations

import asyncio
from datetime import timezone
import logging

from arq import cron
from arq.connections import RedisSettings

from sisfo_identity.core.config import get_settings
from sisfo_identity.core.logging import configure_logging
from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.services.maintenance import prune_audit_logs
from sisfo_identity.workers.registration_consumer import consume_forever


logger = logging.getLogger(__name__)

UTC = timezone.utc


async def prune_audit_job(ctx) -> int:
    async with SessionLocal() as session:
        deleted = await prune_audit_logs(session)
        await session.commit()
    return deleted


async def _startup(ctx) -> None:
    # Run the student-registration consumer alongside scheduled jobs.
    configure_logging()
    ctx["consumer_task"] = asyncio.create_task(consume_forever())


async def _shutdown(ctx) -> None:
    task = ctx.get("consumer_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [prune_audit_job]
    cron_jobs = [cron(prune_audit_job, hour={3}, minute={0}, run_at_startup=False)]
    # Cron hours are evaluated in UTC.
    timezone = UTC
    on_startup = _startup
    on_shutdown = _shutdown
