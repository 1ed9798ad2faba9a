from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.core.config import get_settings
from sisfo_identity.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)


def audit_cutoff(now: datetime | None = None, *, retention_days: int | None = None) -> datetime:
    days = get_settings().audit_retention_days if retention_days is None else retention_days
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


async def prune_audit_logs(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove audit rows beyond the retention window; the caller commits.
    cutoff = audit_cutoff(now)
    deleted = await audit_repo.cleanup_older_than(session, cutoff=cutoff)
    logger.info("audit_pruned deleted=%s cutoff=%s", deleted, cutoff.isoformat())
    return deleted
