from __future__ import annotations

from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.apps.api.errors import CODE_FORBIDDEN, CODE_UNAUTHORIZED
from sisfo_identity.core.config import get_settings
from sisfo_identity.persistence.db import get_session
from sisfo_identity.services import kv
from sisfo_identity.services.audit import schedule_audit
from sisfo_identity.services.auth.authz import allow
from sisfo_identity.services.auth.password_flows import PasswordEngine
from sisfo_identity.services.auth.sessions import SessionEngine
from sisfo_identity.services.auth.tokens import AccessClaims, TokenCodec, TokenError
from sisfo_identity.services.events import EventBus, get_event_bus


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_kv() -> Redis:
    return await kv.get_redis()


def get_token_codec() -> TokenCodec:
    return TokenCodec(get_settings())


async def get_events() -> EventBus:
    return await get_event_bus()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": CODE_UNAUTHORIZED, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated callers lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": CODE_FORBIDDEN, "message": message},
    )


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce "Bearer <token>" and nothing else.
    if not header_value:
        raise _auth_error("Unauthorized")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Unauthorized")
    return parts[1]


async def get_current_claims(
    request: Request,
    codec: TokenCodec = Depends(get_token_codec),
) -> AccessClaims:
    # Validate the access token and expose its claims to handlers and the request log.
    token = parse_bearer_token(request.headers.get("Authorization"))
    try:
        claims = codec.verify_access(token)
    except TokenError as exc:
        schedule_audit(
            tenant_id=None,
            user_id=None,
            action="auth.access_denied",
            resource_type="auth",
            new_values={"reason": exc.reason, "path": request.url.path, "method": request.method},
            request=request,
        )
        raise _auth_error("Unauthorized") from exc
    request.state.claims = claims
    return claims


def require_permission(permission: str) -> Callable[..., Awaitable[AccessClaims]]:
    # Dependency factory for route-declared "resource:action" permissions.
    async def dependency(
        claims: AccessClaims = Depends(get_current_claims),
        db: AsyncSession = Depends(get_db),
    ) -> AccessClaims:
        if not await allow(db, user_id=claims.user_id, tenant_id=claims.tenant_id, permission=permission):
            raise _forbidden_error("Forbidden")
        return claims

    return dependency


async def get_session_engine(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: Redis = Depends(get_kv),
    codec: TokenCodec = Depends(get_token_codec),
) -> SessionEngine:
    return SessionEngine(session=db, redis=redis, codec=codec, request=request)


async def get_password_engine(
    request: Request,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_events),
) -> PasswordEngine:
    return PasswordEngine(session=db, events=events, request=request)
