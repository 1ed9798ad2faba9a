from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import String, cast, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.domain.models import AuditLog


DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass(frozen=True)
class AuditFilter:
    # Optional filters; unset fields do not constrain the query.
    user_id: UUID | None = None
    action: str | None = None
    resource_type: str | None = None
    resource_id: UUID | None = None
    start: datetime | None = None
    end: datetime | None = None


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    # Normalize paging inputs the same way for every list endpoint.
    resolved_limit = limit if limit and limit > 0 else DEFAULT_LIMIT
    resolved_limit = min(resolved_limit, MAX_LIMIT)
    resolved_offset = offset if offset and offset > 0 else 0
    return resolved_limit, resolved_offset


async def list_logs(
    session: AsyncSession,
    *,
    tenant_id: str,
    filters: AuditFilter | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[AuditLog], int]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    filters = filters or AuditFilter()
    limit, offset = clamp_page(limit, offset)
    stmt = select(AuditLog).where(AuditLog.tenant_id == tenant_id)
    if filters.user_id:
        stmt = stmt.where(AuditLog.user_id == filters.user_id)
    if filters.action:
        stmt = stmt.where(AuditLog.action == filters.action)
    if filters.resource_type:
        stmt = stmt.where(AuditLog.resource_type == filters.resource_type)
    if filters.resource_id:
        stmt = stmt.where(AuditLog.resource_id == filters.resource_id)
    if filters.start:
        stmt = stmt.where(AuditLog.created_at >= filters.start)
    if filters.end:
        stmt = stmt.where(AuditLog.created_at <= filters.end)

    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total or 0)


def escape_like(text: str) -> str:
    # Match %, _ and the escape character literally.
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def search_logs(
    session: AsyncSession,
    *,
    tenant_id: str,
    query: str,
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[AuditLog], int]:
    # Case-insensitive substring match over action, resource type and payload text.
    limit, offset = clamp_page(limit, offset)
    pattern = f"%{escape_like(query.strip())}%"
    stmt = select(AuditLog).where(
        AuditLog.tenant_id == tenant_id,
        or_(
            AuditLog.action.ilike(pattern, escape="\\"),
            AuditLog.resource_type.ilike(pattern, escape="\\"),
            cast(AuditLog.new_values, String).ilike(pattern, escape="\\"),
        ),
    )
    total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total or 0)


async def cleanup_older_than(session: AsyncSession, *, cutoff: datetime) -> int:
    # Retention pruning is the only bulk delete the audit table permits.
    result = await session.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
    return result.rowcount or 0
