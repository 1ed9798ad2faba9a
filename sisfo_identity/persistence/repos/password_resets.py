from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.domain.models import PasswordReset


async def create_reset(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: UUID,
    token_hash: str,
    expires_at: datetime,
) -> PasswordReset:
    reset = PasswordReset(
        tenant_id=tenant_id,
        user_id=user_id,
        token_hash=token_hash,
        expires_at=expires_at,
    )
    session.add(reset)
    await session.flush()
    return reset


async def find_valid_reset(
    session: AsyncSession,
    *,
    token_hash: str,
    now: datetime,
) -> PasswordReset | None:
    # Valid means unused and unexpired relative to the caller-supplied store clock.
    result = await session.execute(
        select(PasswordReset).where(
            PasswordReset.token_hash == token_hash,
            PasswordReset.used_at.is_(None),
            PasswordReset.expires_at > now,
        )
    )
    return result.scalar_one_or_none()


async def mark_used(session: AsyncSession, *, reset_id: UUID, now: datetime) -> bool:
    # Conditional update: only the first caller flips used_at; later calls are no-ops.
    result = await session.execute(
        update(PasswordReset)
        .where(PasswordReset.id == reset_id, PasswordReset.used_at.is_(None))
        .values(used_at=now)
    )
    return (result.rowcount or 0) > 0
