from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.domain.models import Permission, Role, RolePermission, UserRole
from sisfo_identity.persistence.repos.upsert import insert_ignore


async def get_permission(session: AsyncSession, *, resource: str, action: str) -> Permission | None:
    result = await session.execute(
        select(Permission).where(Permission.resource == resource, Permission.action == action)
    )
    return result.scalar_one_or_none()


async def get_or_create_permission(
    session: AsyncSession,
    *,
    resource: str,
    action: str,
    description: str | None = None,
) -> Permission:
    # Insert-or-ignore then reload so concurrent creators converge on one row.
    existing = await get_permission(session, resource=resource, action=action)
    if existing is not None:
        return existing
    await insert_ignore(session, Permission, resource=resource, action=action, description=description)
    created = await get_permission(session, resource=resource, action=action)
    if created is None:
        raise LookupError(f"permission {resource}:{action} insert failed")
    return created


async def list_permissions(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 100,
) -> list[Permission]:
    result = await session.execute(
        select(Permission).order_by(Permission.resource, Permission.action).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def user_has_permission(
    session: AsyncSession,
    *,
    user_id: UUID,
    tenant_id: str,
    resource: str,
    action: str,
) -> bool:
    # Single joined count over user -> live tenant role -> permission.
    stmt = (
        select(func.count())
        .select_from(UserRole)
        .join(Role, Role.id == UserRole.role_id)
        .join(RolePermission, RolePermission.role_id == Role.id)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(
            UserRole.user_id == user_id,
            Role.tenant_id == tenant_id,
            Role.deleted_at.is_(None),
            Permission.resource == resource,
            Permission.action == action,
        )
    )
    count = await session.scalar(stmt)
    return int(count or 0) > 0
