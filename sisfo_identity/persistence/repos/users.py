from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.domain.models import User


def normalize_email(email: str) -> str:
    # Emails are compared case-insensitively by storing a canonical form.
    return email.strip().lower()


async def create_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
    password_hash: str,
    is_active: bool = True,
) -> User:
    # Flush immediately so unique violations surface at the call site.
    user = User(
        tenant_id=tenant_id.strip(),
        email=normalize_email(email),
        password_hash=password_hash,
        is_active=is_active,
    )
    session.add(user)
    await session.flush()
    return user


async def get_user(
    session: AsyncSession,
    user_id: UUID,
    *,
    tenant_id: str | None = None,
) -> User | None:
    stmt = select(User).where(User.id == user_id, User.deleted_at.is_(None))
    if tenant_id is not None:
        stmt = stmt.where(User.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, *, tenant_id: str, email: str) -> User | None:
    result = await session.execute(
        select(User).where(
            User.tenant_id == tenant_id.strip(),
            User.email == normalize_email(email),
            User.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def list_users(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[User], int]:
    # Return a page plus the total so clients can paginate without a second call.
    base = select(User).where(User.tenant_id == tenant_id, User.deleted_at.is_(None))
    total = await session.scalar(select(func.count()).select_from(base.subquery()))
    result = await session.execute(
        base.order_by(User.created_at.desc(), User.id).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)


async def update_user(session: AsyncSession, user: User, **fields: Any) -> User:
    # Apply only provided fields; email is normalized like on create.
    for key, value in fields.items():
        if value is None:
            continue
        if key == "email":
            value = normalize_email(value)
        setattr(user, key, value)
    await session.flush()
    return user


async def soft_delete_user(session: AsyncSession, *, tenant_id: str, user_id: UUID) -> bool:
    result = await session.execute(
        update(User)
        .where(User.id == user_id, User.tenant_id == tenant_id, User.deleted_at.is_(None))
        .values(deleted_at=datetime.now(timezone.utc), is_active=False)
    )
    return (result.rowcount or 0) > 0
