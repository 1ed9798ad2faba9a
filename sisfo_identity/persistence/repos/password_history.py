from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.domain.models import PasswordHistory


async def add_entry(session: AsyncSession, *, user_id: UUID, password_hash: str) -> PasswordHistory:
    entry = PasswordHistory(user_id=user_id, password_hash=password_hash)
    session.add(entry)
    await session.flush()
    return entry


async def recent_hashes(session: AsyncSession, *, user_id: UUID, limit: int) -> list[str]:
    if limit <= 0:
        return []
    result = await session.execute(
        select(PasswordHistory.password_hash)
        .where(PasswordHistory.user_id == user_id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def prune(session: AsyncSession, *, user_id: UUID, keep: int) -> int:
    # Keep the newest `keep` entries for the user and delete the rest.
    keep_ids = (
        select(PasswordHistory.id)
        .where(PasswordHistory.user_id == user_id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
        .limit(max(keep, 0))
    )
    result = await session.execute(
        delete(PasswordHistory).where(
            PasswordHistory.user_id == user_id,
            PasswordHistory.id.not_in(keep_ids),
        )
    )
    return result.rowcount or 0
