from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging

from fastapi import HTTPException, Request, status
from redis.asyncio import Redis
from redis.exceptions import RedisError

from sisfo_identity.apps.api.errors import CODE_INTERNAL, CODE_RATE_LIMITED
from sisfo_identity.core.config import Settings, get_settings
from sisfo_identity.services import kv


logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
_READ_METHODS = {"GET", "HEAD"}


@dataclass(frozen=True)
class RateLimitPolicy:
    """Per-minute limits: prefix overrides first (insertion order), then read/write."""

    read_limit: int
    write_limit: int
    overrides: tuple[tuple[str, int], ...] = field(default_factory=tuple)

    def limit_for(self, method: str, path: str) -> int:
        for prefix, limit in self.overrides:
            if path.startswith(prefix):
                return limit
        if method.upper() in _READ_METHODS:
            return self.read_limit
        return self.write_limit


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    count: int
    retry_after_s: int = 0


def default_policy(settings: Settings | None = None) -> RateLimitPolicy:
    # RATE_LIMIT_PER_MINUTE is the ceiling; write and auth limits only tighten it.
    settings = settings or get_settings()
    ceiling = settings.rate_limit_per_minute
    return RateLimitPolicy(
        read_limit=ceiling,
        write_limit=min(settings.rate_limit_write_per_minute, ceiling),
        overrides=(("/api/v1/auth/", min(settings.rate_limit_auth_per_minute, ceiling)),),
    )


def rate_limit_key(client: str, method: str, path: str) -> str:
    return f"ratelimit:{client}:{method.upper()}:{path}"


def client_ip(request: Request) -> str:
    # Trust X-Forwarded-For only because TLS terminates at a gateway we control.
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


class RateLimiter:
    def __init__(
        self,
        *,
        policy: RateLimitPolicy | None = None,
        redis: Redis | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self._policy = policy or default_policy()
        self._redis = redis
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().rate_limit_timeout_s

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await kv.get_redis()

    async def hit(self, *, client: str, method: str, path: str) -> RateLimitDecision:
        # Fixed one-minute window: the first increment starts the window TTL.
        limit = self._policy.limit_for(method, path)
        key = rate_limit_key(client, method, path)
        redis = await self._client()
        count = int(await asyncio.wait_for(redis.incr(key), timeout=self._timeout_s))
        if count == 1:
            await asyncio.wait_for(redis.expire(key, WINDOW_SECONDS), timeout=self._timeout_s)
        if count > limit:
            ttl = await asyncio.wait_for(redis.ttl(key), timeout=self._timeout_s)
            retry_after = int(ttl) if ttl and int(ttl) > 0 else WINDOW_SECONDS
            return RateLimitDecision(allowed=False, limit=limit, count=count, retry_after_s=retry_after)
        return RateLimitDecision(allowed=True, limit=limit, count=count)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share the policy and Redis client.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Reset cached policy and connections for deterministic test setup.
    global _rate_limiter
    _rate_limiter = None


def throttle_exception(decision: RateLimitDecision) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={"code": CODE_RATE_LIMITED, "message": "Too Many Requests", "limit": decision.limit},
        headers={"Retry-After": str(decision.retry_after_s)},
    )


def unavailable_exception() -> HTTPException:
    # Fail closed: refusing traffic beats unbounded admission.
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": CODE_INTERNAL, "message": "Rate limiter unavailable"},
    )


async def enforce_rate_limit(request: Request) -> RateLimitDecision | None:
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None
    limiter = get_rate_limiter()
    try:
        decision = await limiter.hit(client=client_ip(request), method=request.method, path=request.url.path)
    except (RedisError, OSError, asyncio.TimeoutError) as exc:
        logger.error("rate_limit_store_failed path=%s", request.url.path, exc_info=exc)
        raise unavailable_exception() from exc
    if not decision.allowed:
        logger.info(
            "rate_limited client=%s method=%s path=%s limit=%s",
            client_ip(request),
            request.method,
            request.url.path,
            decision.limit,
        )
        raise throttle_exception(decision)
    return decision
