from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.domain.models import Permission, Role, RolePermission, UserRole
from sisfo_identity.persistence.repos.upsert import insert_ignore


async def create_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    description: str | None = None,
    is_system_role: bool = False,
) -> Role:
    role = Role(
        tenant_id=tenant_id,
        name=name.strip(),
        description=description,
        is_system_role=is_system_role,
    )
    session.add(role)
    await session.flush()
    return role


async def get_role(session: AsyncSession, *, tenant_id: str, role_id: UUID) -> Role | None:
    result = await session.execute(
        select(Role).where(Role.id == role_id, Role.tenant_id == tenant_id, Role.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_role_by_name(session: AsyncSession, *, tenant_id: str, name: str) -> Role | None:
    result = await session.execute(
        select(Role).where(
            Role.tenant_id == tenant_id,
            Role.name == name.strip(),
            Role.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def list_roles(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[Role], int]:
    base = select(Role).where(Role.tenant_id == tenant_id, Role.deleted_at.is_(None))
    total = await session.scalar(select(func.count()).select_from(base.subquery()))
    result = await session.execute(base.order_by(Role.name).offset(offset).limit(limit))
    return list(result.scalars().all()), int(total or 0)


async def soft_delete_role(session: AsyncSession, *, tenant_id: str, role_id: UUID) -> bool:
    # Edges stay in place; authorization ignores roles with a deletion marker.
    result = await session.execute(
        update(Role)
        .where(Role.id == role_id, Role.tenant_id == tenant_id, Role.deleted_at.is_(None))
        .values(deleted_at=datetime.now(timezone.utc))
    )
    return (result.rowcount or 0) > 0


async def assign_user_role(session: AsyncSession, *, user_id: UUID, role_id: UUID) -> bool:
    return await insert_ignore(session, UserRole, user_id=user_id, role_id=role_id)


async def unassign_user_role(session: AsyncSession, *, user_id: UUID, role_id: UUID) -> bool:
    result = await session.execute(
        delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    )
    return (result.rowcount or 0) > 0


async def list_user_roles(session: AsyncSession, *, tenant_id: str, user_id: UUID) -> list[Role]:
    result = await session.execute(
        select(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(
            UserRole.user_id == user_id,
            Role.tenant_id == tenant_id,
            Role.deleted_at.is_(None),
        )
        .order_by(Role.name)
    )
    return list(result.scalars().all())


async def role_names_for_user(session: AsyncSession, *, tenant_id: str, user_id: UUID) -> list[str]:
    roles = await list_user_roles(session, tenant_id=tenant_id, user_id=user_id)
    return [role.name for role in roles]


async def grant_permission(session: AsyncSession, *, role_id: UUID, permission_id: UUID) -> bool:
    return await insert_ignore(session, RolePermission, role_id=role_id, permission_id=permission_id)


async def revoke_permission(session: AsyncSession, *, role_id: UUID, permission_id: UUID) -> bool:
    result = await session.execute(
        delete(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
        )
    )
    return (result.rowcount or 0) > 0


async def list_role_permissions(session: AsyncSession, *, role_id: UUID) -> list[Permission]:
    result = await session.execute(
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.resource, Permission.action)
    )
    return list(result.scalars().all())
