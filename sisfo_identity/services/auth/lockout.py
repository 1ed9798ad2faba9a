from __future__ import annotations

from redis.asyncio import Redis

from sisfo_identity.core.config import Settings, get_settings


def _fail_key(tenant_id: str, email: str) -> str:
    return f"loginfail:{tenant_id}:{email}"


def _lock_key(tenant_id: str, email: str) -> str:
    return f"lockout:{tenant_id}:{email}"


class LoginLockout:
    """Counts failed logins per (tenant, email) and locks the account past a threshold."""

    def __init__(self, redis: Redis, settings: Settings | None = None) -> None:
        self._redis = redis
        self._settings = settings or get_settings()

    async def is_locked(self, tenant_id: str, email: str) -> bool:
        return bool(await self._redis.exists(_lock_key(tenant_id, email)))

    async def register_failure(self, tenant_id: str, email: str) -> bool:
        # Returns True when this failure tripped the lock.
        key = _fail_key(tenant_id, email)
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, self._settings.fail_window_ttl)
        threshold = self._settings.lockout_threshold
        if threshold > 0 and count >= threshold:
            await self._redis.set(_lock_key(tenant_id, email), "1", ex=self._settings.lockout_ttl)
            await self._redis.delete(key)
            return True
        return False

    async def clear(self, tenant_id: str, email: str) -> None:
        await self._redis.delete(_fail_key(tenant_id, email))
