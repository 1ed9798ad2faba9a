"""Login, refresh rotation, logout and profile lookup.

No server-side session rows exist: a session is the pair of signed tokens plus
the revocation list. Refresh rotation revokes the presented token before the
successor pair is handed back, so a crash in between leaves the client logged
out rather than holding two live refresh tokens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from sisfo_identity.core.config import Settings, get_settings
from sisfo_identity.core.errors import DependencyUnavailableError, ForbiddenError, UnauthorizedError
from sisfo_identity.persistence.repos import roles as roles_repo
from sisfo_identity.persistence.repos import users as users_repo
from sisfo_identity.services.audit import record_audit
from sisfo_identity.services.auth.lockout import LoginLockout
from sisfo_identity.services.auth.passwords import verify_password_async
from sisfo_identity.services.auth.tokens import AccessClaims, TokenCodec, TokenError, TokenPair
from sisfo_identity.services.revocation import RevocationStore


logger = logging.getLogger(__name__)

ACTION_LOGIN = "auth.login"
ACTION_REFRESH = "auth.refresh"
ACTION_LOGOUT = "auth.logout"


@dataclass(frozen=True)
class UserProfile:
    id: str
    tenant_id: str
    email: str
    roles: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "tenant_id": self.tenant_id, "email": self.email, "roles": self.roles}


class SessionEngine:
    def __init__(
        self,
        *,
        session: AsyncSession,
        redis: Redis,
        codec: TokenCodec | None = None,
        revocations: RevocationStore | None = None,
        settings: Settings | None = None,
        request: Request | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._codec = codec or TokenCodec(self._settings)
        self._revocations = revocations or RevocationStore(redis)
        self._lockout = LoginLockout(redis, self._settings)
        self._request = request

    async def _audit(
        self,
        action: str,
        *,
        tenant_id: str | None,
        user_id: Any,
        values: dict[str, Any],
    ) -> None:
        await record_audit(
            session=self._session,
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            resource_type="user",
            resource_id=user_id,
            new_values=values,
            request=self._request,
        )

    async def login(self, *, tenant_id: str, email: str, password: str) -> TokenPair:
        tenant_id = tenant_id.strip()
        email = users_repo.normalize_email(email)
        try:
            locked = await self._lockout.is_locked(tenant_id, email)
        except RedisError as exc:
            logger.error("lockout_check_failed tenant_id=%s", tenant_id, exc_info=exc)
            raise DependencyUnavailableError("lockout store unavailable") from exc
        if locked:
            await self._audit(
                ACTION_LOGIN,
                tenant_id=tenant_id,
                user_id=None,
                values={"success": False, "reason": "locked", "email": email},
            )
            raise ForbiddenError("account locked")

        user = await users_repo.get_user_by_email(self._session, tenant_id=tenant_id, email=email)
        if user is None:
            await self._register_failure(tenant_id, email)
            await self._audit(
                ACTION_LOGIN,
                tenant_id=tenant_id,
                user_id=None,
                values={"success": False, "reason": "unknown_user", "email": email},
            )
            raise UnauthorizedError("invalid credentials", reason="unknown_user")
        if not user.is_active:
            await self._audit(
                ACTION_LOGIN,
                tenant_id=tenant_id,
                user_id=user.id,
                values={"success": False, "reason": "inactive"},
            )
            raise ForbiddenError("account inactive")
        if not await verify_password_async(password, user.password_hash):
            tripped = await self._register_failure(tenant_id, email)
            await self._audit(
                ACTION_LOGIN,
                tenant_id=tenant_id,
                user_id=user.id,
                values={"success": False, "reason": "bad_password", "locked": tripped},
            )
            raise UnauthorizedError("invalid credentials", reason="bad_password")

        try:
            await self._lockout.clear(tenant_id, email)
        except RedisError as exc:
            logger.warning("lockout_clear_failed tenant_id=%s", tenant_id, exc_info=exc)
        roles = await roles_repo.role_names_for_user(self._session, tenant_id=tenant_id, user_id=user.id)
        pair = self._codec.issue_pair(user_id=user.id, tenant_id=tenant_id, roles=roles)
        await self._audit(ACTION_LOGIN, tenant_id=tenant_id, user_id=user.id, values={"success": True})
        logger.info("login_succeeded tenant_id=%s user_id=%s", tenant_id, user.id)
        return pair

    async def _register_failure(self, tenant_id: str, email: str) -> bool:
        try:
            return await self._lockout.register_failure(tenant_id, email)
        except RedisError as exc:
            logger.warning("lockout_record_failed tenant_id=%s", tenant_id, exc_info=exc)
            return False

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self._codec.verify_refresh(refresh_token)
        except TokenError as exc:
            await self._audit(
                ACTION_REFRESH,
                tenant_id=None,
                user_id=None,
                values={"success": False, "reason": exc.reason},
            )
            raise

        try:
            revoked = await self._revocations.is_revoked(claims.jti)
        except RedisError as exc:
            logger.error("revocation_check_failed jti=%s", claims.jti, exc_info=exc)
            raise DependencyUnavailableError("revocation store unavailable") from exc
        if revoked:
            await self._audit(
                ACTION_REFRESH,
                tenant_id=None,
                user_id=claims.subject,
                values={"success": False, "reason": "revoked"},
            )
            raise UnauthorizedError(reason="revoked")

        user = await users_repo.get_user(self._session, claims.subject)
        if user is None or not user.is_active:
            reason = "unknown_user" if user is None else "inactive"
            await self._audit(
                ACTION_REFRESH,
                tenant_id=user.tenant_id if user else None,
                user_id=claims.subject,
                values={"success": False, "reason": reason},
            )
            raise UnauthorizedError(reason=reason)

        roles = await roles_repo.role_names_for_user(self._session, tenant_id=user.tenant_id, user_id=user.id)
        pair = self._codec.issue_pair(user_id=user.id, tenant_id=user.tenant_id, roles=roles)
        # Revoke the predecessor first; if that fails the successor is never returned.
        try:
            await self._revocations.mark(claims.jti, self._codec.remaining_ttl(claims.expires_at))
        except RedisError as exc:
            logger.error("revocation_mark_failed jti=%s", claims.jti, exc_info=exc)
            raise DependencyUnavailableError("revocation store unavailable") from exc
        await self._audit(ACTION_REFRESH, tenant_id=user.tenant_id, user_id=user.id, values={"success": True})
        return pair

    async def logout(self, refresh_token: str | None) -> None:
        # Always succeeds for the client; revocation and tenant binding are best-effort.
        claims = self._codec.peek_refresh(refresh_token) if refresh_token else None
        tenant_id: str | None = None
        user_id = None
        revoked = False
        if claims is not None:
            user_id = claims.subject
            user = await users_repo.get_user(self._session, claims.subject)
            if user is not None:
                tenant_id = user.tenant_id
            try:
                await self._revocations.mark(claims.jti, self._codec.refresh_ttl)
                revoked = True
            except RedisError as exc:
                logger.warning("logout_revoke_failed jti=%s", claims.jti, exc_info=exc)
        await self._audit(
            ACTION_LOGOUT,
            tenant_id=tenant_id,
            user_id=user_id,
            values={"success": True, "revoked": revoked},
        )

    async def me(self, claims: AccessClaims) -> UserProfile:
        user = await users_repo.get_user(self._session, claims.user_id, tenant_id=claims.tenant_id)
        if user is None or not user.is_active:
            raise UnauthorizedError(reason="unknown_user" if user is None else "inactive")
        roles = await roles_repo.role_names_for_user(self._session, tenant_id=user.tenant_id, user_id=user.id)
        return UserProfile(id=str(user.id), tenant_id=user.tenant_id, email=user.email, roles=roles)
