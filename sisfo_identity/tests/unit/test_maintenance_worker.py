from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from sisfo_identity.domain.models import AuditLog
from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.services.maintenance import audit_cutoff
from sisfo_identity.workers.maintenance_worker import WorkerSettings, prune_audit_job


def test_worker_schedules_nightly_prune() -> None:
    assert prune_audit_job in WorkerSettings.functions
    assert len(WorkerSettings.cron_jobs) == 1
    assert WorkerSettings.timezone == timezone.utc


@pytest.mark.asyncio
async def test_prune_job_commits_deletions() -> None:
    cutoff = audit_cutoff(datetime.now(timezone.utc))
    async with SessionLocal() as session:
        session.add(AuditLog(tenant_id="t1", action="stale", resource_type="x", created_at=cutoff - timedelta(days=2)))
        session.add(AuditLog(tenant_id="t1", action="fresh", resource_type="x", created_at=cutoff + timedelta(days=2)))
        await session.commit()

    deleted = await prune_audit_job({})

    async with SessionLocal() as session:
        actions = (await session.scalars(select(AuditLog.action))).all()
        total = await session.scalar(select(func.count()).select_from(AuditLog))
    assert deleted == 1
    assert actions == ["fresh"]
    assert total == 1
