from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sisfo_identity.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Bound asyncpg pools and statement time for predictable latency; SQLite takes no pool options.
if not settings.postgres_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = 10
    _engine_kwargs["max_overflow"] = 10
    _engine_kwargs["pool_timeout"] = settings.db_timeout_s
    _engine_kwargs["pool_recycle"] = 1800
    _engine_kwargs["connect_args"] = {
        "server_settings": {"statement_timeout": str(int(settings.db_timeout_s * 1000))}
    }
engine = create_async_engine(settings.postgres_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def store_now(session: AsyncSession) -> datetime:
    # Read the database clock so expiry checks never depend on host clock skew.
    value = await session.scalar(select(func.now()))
    if value is None:
        return datetime.now(timezone.utc)
    return value
