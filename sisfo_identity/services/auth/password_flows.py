from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from sisfo_identity.core.config import Settings, get_settings
from sisfo_identity.core.errors import InvalidInputError, UnauthorizedError
from sisfo_identity.domain.models import User
from sisfo_identity.persistence.db import store_now
from sisfo_identity.persistence.repos import password_history as history_repo
from sisfo_identity.persistence.repos import password_resets as resets_repo
from sisfo_identity.persistence.repos import users as users_repo
from sisfo_identity.services.audit import record_audit
from sisfo_identity.services.auth.passwords import (
    generate_reset_token,
    hash_password_async,
    hash_reset_token,
    validate_password_strength,
    verify_password_async,
)
from sisfo_identity.services.auth.tokens import AccessClaims
from sisfo_identity.services.events import PASSWORD_RESET_REQUESTED, EventBus, password_reset_payload


logger = logging.getLogger(__name__)

ACTION_CHANGE_PASSWORD = "auth.change_password"
ACTION_FORGOT_PASSWORD = "auth.forgot_password"
ACTION_RESET_PASSWORD = "auth.reset_password"


class PasswordEngine:
    def __init__(
        self,
        *,
        session: AsyncSession,
        events: EventBus | None = None,
        settings: Settings | None = None,
        request: Request | None = None,
    ) -> None:
        self._session = session
        self._events = events
        self._settings = settings or get_settings()
        self._request = request

    async def _audit(self, action: str, *, tenant_id: str | None, user_id: Any, values: dict[str, Any]) -> None:
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

    async def _ensure_not_reused(self, user: User, new_password: str) -> None:
        # The current hash counts as history so "change to the same password" is rejected too.
        candidates = [user.password_hash]
        candidates.extend(
            await history_repo.recent_hashes(
                self._session, user_id=user.id, limit=self._settings.password_history_size
            )
        )
        for previous in candidates:
            if await verify_password_async(new_password, previous):
                raise InvalidInputError("password was used recently", details={"reason": "password_reused"})

    async def _store_new_password(self, user: User, new_password: str) -> None:
        new_hash = await hash_password_async(new_password, rounds=self._settings.bcrypt_rounds)
        await users_repo.update_user(self._session, user, password_hash=new_hash)
        await history_repo.add_entry(self._session, user_id=user.id, password_hash=new_hash)
        await history_repo.prune(self._session, user_id=user.id, keep=self._settings.password_history_size)

    async def change_password(self, claims: AccessClaims, *, old_password: str, new_password: str) -> None:
        validate_password_strength(new_password, self._settings)
        user = await users_repo.get_user(self._session, claims.user_id, tenant_id=claims.tenant_id)
        if user is None or not user.is_active:
            raise UnauthorizedError(reason="unknown_user")
        if not await verify_password_async(old_password, user.password_hash):
            await self._audit(
                ACTION_CHANGE_PASSWORD,
                tenant_id=user.tenant_id,
                user_id=user.id,
                values={"success": False, "reason": "bad_password"},
            )
            raise UnauthorizedError("old password does not match", reason="bad_password")
        await self._ensure_not_reused(user, new_password)
        await self._store_new_password(user, new_password)
        await self._session.commit()
        await self._audit(
            ACTION_CHANGE_PASSWORD, tenant_id=user.tenant_id, user_id=user.id, values={"success": True}
        )

    async def forgot_password(self, *, tenant_id: str, email: str) -> str | None:
        """Issue a reset token when the account exists.

        Returns the plaintext token (for dev-mode echo) or None. The caller
        always reports success so account existence is not disclosed.
        """
        tenant_id = tenant_id.strip()
        user = await users_repo.get_user_by_email(self._session, tenant_id=tenant_id, email=email)
        token: str | None = None
        if user is not None:
            token = generate_reset_token()
            now = await store_now(self._session)
            await resets_repo.create_reset(
                self._session,
                tenant_id=tenant_id,
                user_id=user.id,
                token_hash=hash_reset_token(token),
                expires_at=now + timedelta(seconds=self._settings.password_reset_ttl),
            )
            await self._session.commit()
            await self._publish_reset(user=user, token=token)
        await self._audit(
            ACTION_FORGOT_PASSWORD,
            tenant_id=tenant_id,
            user_id=user.id if user else None,
            values={"success": True},
        )
        return token

    async def _publish_reset(self, *, user: User, token: str) -> None:
        if self._events is None:
            logger.warning("password_reset_event_skipped user_id=%s reason=no_bus", user.id)
            return
        payload = password_reset_payload(
            tenant_id=user.tenant_id, user_id=str(user.id), email=user.email, token=token
        )
        try:
            await self._events.publish(PASSWORD_RESET_REQUESTED, payload)
        except RedisError as exc:
            # The reset row exists; the user can request another mail.
            logger.warning("password_reset_event_failed user_id=%s", user.id, exc_info=exc)

    async def reset_password(self, *, token: str, new_password: str) -> UUID:
        now = await store_now(self._session)
        reset = await resets_repo.find_valid_reset(self._session, token_hash=hash_reset_token(token), now=now)
        if reset is None:
            await self._audit(
                ACTION_RESET_PASSWORD,
                tenant_id=None,
                user_id=None,
                values={"success": False, "reason": "invalid_token"},
            )
            raise UnauthorizedError("invalid or expired token", reason="invalid_token")
        validate_password_strength(new_password, self._settings)
        user = await users_repo.get_user(self._session, reset.user_id, tenant_id=reset.tenant_id)
        if user is None:
            raise UnauthorizedError("invalid or expired token", reason="unknown_user")
        await self._ensure_not_reused(user, new_password)
        if not await resets_repo.mark_used(self._session, reset_id=reset.id, now=now):
            # Lost a race with a concurrent redemption.
            await self._session.rollback()
            raise UnauthorizedError("invalid or expired token", reason="already_used")
        await self._store_new_password(user, new_password)
        await self._session.commit()
        await self._audit(
            ACTION_RESET_PASSWORD, tenant_id=user.tenant_id, user_id=user.id, values={"success": True}
        )
        return user.id
