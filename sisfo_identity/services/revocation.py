from __future__ import annotations

import logging

from redis.asyncio import Redis

from sisfo_identity.services import kv


logger = logging.getLogger(__name__)

_KEY_PREFIX = "blacklist:jti:"


def revocation_key(jti: str) -> str:
    return f"{_KEY_PREFIX}{jti}"


class RevocationStore:
    """Positive list of revoked token ids; absence means not revoked."""

    def __init__(self, redis: Redis | None = None) -> None:
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await kv.get_redis()

    async def mark(self, jti: str, ttl_seconds: int) -> None:
        # SET is idempotent, so concurrent revocations of the same jti converge.
        redis = await self._client()
        await redis.set(revocation_key(jti), "1", ex=max(int(ttl_seconds), 1))
        logger.info("token_revoked jti=%s ttl_s=%s", jti, ttl_seconds)

    async def is_revoked(self, jti: str) -> bool:
        redis = await self._client()
        return bool(await redis.exists(revocation_key(jti)))
