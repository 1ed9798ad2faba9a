"""Tenant-scoped administration of users, roles and permissions."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.core.config import get_settings
from sisfo_identity.core.errors import ConflictError, InvalidInputError, NotFoundError
from sisfo_identity.domain.models import Permission, Role, User
from sisfo_identity.persistence.repos import password_history as history_repo
from sisfo_identity.persistence.repos import permissions as permissions_repo
from sisfo_identity.persistence.repos import roles as roles_repo
from sisfo_identity.persistence.repos import users as users_repo
from sisfo_identity.services.auth.authz import parse_permission
from sisfo_identity.services.auth.passwords import hash_password_async, validate_password_strength


logger = logging.getLogger(__name__)


def _require_email(email: str) -> str:
    normalized = users_repo.normalize_email(email)
    local, _, domain = normalized.partition("@")
    if not local or not domain:
        raise InvalidInputError("invalid email", details={"field": "email"})
    return normalized


async def register_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
    password: str,
    is_active: bool = True,
    enforce_policy: bool = True,
) -> User:
    tenant_id = tenant_id.strip()
    if not tenant_id:
        raise InvalidInputError("tenant_id is required", details={"field": "tenant_id"})
    normalized = _require_email(email)
    if enforce_policy:
        validate_password_strength(password)
    elif not password:
        raise InvalidInputError("password is required", details={"field": "password"})
    if await users_repo.get_user_by_email(session, tenant_id=tenant_id, email=normalized) is not None:
        raise ConflictError("email already registered", details={"field": "email"})
    password_hash = await hash_password_async(password)
    try:
        user = await users_repo.create_user(
            session,
            tenant_id=tenant_id,
            email=normalized,
            password_hash=password_hash,
            is_active=is_active,
        )
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("email already registered", details={"field": "email"}) from exc
    await history_repo.add_entry(session, user_id=user.id, password_hash=password_hash)
    logger.info("user_registered tenant_id=%s user_id=%s", tenant_id, user.id)
    return user


async def get_user_or_404(session: AsyncSession, *, tenant_id: str, user_id: UUID) -> User:
    user = await users_repo.get_user(session, user_id, tenant_id=tenant_id)
    if user is None:
        raise NotFoundError("user not found")
    return user


async def update_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: UUID,
    email: str | None = None,
    password: str | None = None,
    is_active: bool | None = None,
) -> User:
    user = await get_user_or_404(session, tenant_id=tenant_id, user_id=user_id)
    password_hash = None
    if password is not None:
        validate_password_strength(password)
        password_hash = await hash_password_async(password)
    try:
        await users_repo.update_user(
            session,
            user,
            email=_require_email(email) if email is not None else None,
            password_hash=password_hash,
            is_active=is_active,
        )
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("email already registered", details={"field": "email"}) from exc
    if password_hash is not None:
        await history_repo.add_entry(session, user_id=user.id, password_hash=password_hash)
        await history_repo.prune(session, user_id=user.id, keep=get_settings().password_history_size)
    return user


async def delete_user(session: AsyncSession, *, tenant_id: str, user_id: UUID) -> None:
    if not await users_repo.soft_delete_user(session, tenant_id=tenant_id, user_id=user_id):
        raise NotFoundError("user not found")


async def create_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    description: str | None = None,
    is_system_role: bool = False,
) -> Role:
    if not name.strip():
        raise InvalidInputError("role name is required", details={"field": "name"})
    if await roles_repo.get_role_by_name(session, tenant_id=tenant_id, name=name) is not None:
        raise ConflictError("role already exists", details={"field": "name"})
    try:
        return await roles_repo.create_role(
            session,
            tenant_id=tenant_id,
            name=name,
            description=description,
            is_system_role=is_system_role,
        )
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("role already exists", details={"field": "name"}) from exc


async def get_or_create_role(session: AsyncSession, *, tenant_id: str, name: str) -> Role:
    role = await roles_repo.get_role_by_name(session, tenant_id=tenant_id, name=name)
    if role is not None:
        return role
    try:
        return await create_role(session, tenant_id=tenant_id, name=name)
    except ConflictError:
        # A concurrent creator won; read its row.
        role = await roles_repo.get_role_by_name(session, tenant_id=tenant_id, name=name)
        if role is None:
            raise
        return role


async def assign_role_by_name(session: AsyncSession, *, tenant_id: str, user_id: UUID, role_name: str) -> Role:
    # Roles are created on first assignment so provisioning flows need no seed step.
    await get_user_or_404(session, tenant_id=tenant_id, user_id=user_id)
    role = await get_or_create_role(session, tenant_id=tenant_id, name=role_name)
    await roles_repo.assign_user_role(session, user_id=user_id, role_id=role.id)
    return role


async def unassign_role(session: AsyncSession, *, tenant_id: str, user_id: UUID, role_id: UUID) -> None:
    await get_user_or_404(session, tenant_id=tenant_id, user_id=user_id)
    role = await roles_repo.get_role(session, tenant_id=tenant_id, role_id=role_id)
    if role is None:
        raise NotFoundError("role not found")
    await roles_repo.unassign_user_role(session, user_id=user_id, role_id=role_id)


async def delete_role(session: AsyncSession, *, tenant_id: str, role_id: UUID) -> None:
    if not await roles_repo.soft_delete_role(session, tenant_id=tenant_id, role_id=role_id):
        raise NotFoundError("role not found")


async def ensure_permission(session: AsyncSession, permission: str, *, description: str | None = None) -> Permission:
    parsed = parse_permission(permission)
    if parsed is None:
        raise InvalidInputError("permission must be resource:action", details={"field": "permission"})
    resource, action = parsed
    return await permissions_repo.get_or_create_permission(
        session, resource=resource, action=action, description=description
    )


async def grant_permission(session: AsyncSession, *, tenant_id: str, role_id: UUID, permission: str) -> Permission:
    role = await roles_repo.get_role(session, tenant_id=tenant_id, role_id=role_id)
    if role is None:
        raise NotFoundError("role not found")
    granted = await ensure_permission(session, permission)
    await roles_repo.grant_permission(session, role_id=role.id, permission_id=granted.id)
    return granted


# Baseline grants for the roles every tenant starts with.
SYSTEM_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "admin": ("users:read", "users:write", "roles:read", "roles:write", "audit:read"),
    "teacher": ("users:read", "attendance:read", "attendance:write", "grades:read", "grades:write"),
    "student": ("attendance:read", "grades:read"),
    "parent": ("attendance:read", "grades:read"),
}


async def seed_system_roles(session: AsyncSession, *, tenant_id: str) -> dict[str, Role]:
    """Create the system roles and their grants for a tenant; safe to rerun."""
    seeded: dict[str, Role] = {}
    for name, grants in SYSTEM_ROLE_PERMISSIONS.items():
        role = await roles_repo.get_role_by_name(session, tenant_id=tenant_id, name=name)
        if role is None:
            role = await create_role(session, tenant_id=tenant_id, name=name, is_system_role=True)
        for permission in grants:
            granted = await ensure_permission(session, permission)
            await roles_repo.grant_permission(session, role_id=role.id, permission_id=granted.id)
        seeded[name] = role
    logger.info("system_roles_seeded tenant_id=%s roles=%s", tenant_id, ",".join(seeded))
    return seeded
