from __future__ import annotations

import asyncio
import logging

from redis.asyncio import Redis

from sisfo_identity.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Cache one client per event loop so requests share connections.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop in (current_loop, None):
        return _redis_pool
    if _redis_pool is not None and _redis_loop not in (current_loop, None):
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def set_redis_client(client: Redis) -> None:
    # Pin an already-built client for the current loop (embedded runners and tests).
    global _redis_pool, _redis_loop
    _redis_pool = client
    try:
        _redis_loop = asyncio.get_running_loop()
    except RuntimeError:
        _redis_loop = None


def reset_redis_state() -> None:
    # Drop the cached client so the next call reconnects with fresh settings.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None
