"""HS256 access/refresh token codec.

Access and refresh tokens are signed with separate secrets, so a token minted
for one purpose never validates for the other. Every validation failure maps
to a `TokenError` whose `reason` names the cause for the audit log; callers
only ever surface a generic unauthorized response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Callable
from uuid import UUID, uuid4

import jwt

from sisfo_identity.core.config import Settings, get_settings
from sisfo_identity.core.errors import UnauthorizedError


ALGORITHM = "HS256"

REASON_INVALID_SIGNATURE = "invalid_signature"
REASON_EXPIRED = "expired"
REASON_NOT_YET_VALID = "not_yet_valid"
REASON_WRONG_ISSUER = "wrong_issuer"
REASON_WRONG_AUDIENCE = "wrong_audience"
REASON_WRONG_ALGORITHM = "wrong_algorithm"
REASON_MALFORMED = "malformed"

_REQUIRED_CLAIMS = ["iss", "aud", "iat", "nbf", "exp", "jti"]


class TokenError(UnauthorizedError):
    """Token failed validation; `reason` is one of the REASON_* constants."""


@dataclass(frozen=True)
class AccessClaims:
    user_id: UUID
    tenant_id: str
    roles: list[str] = field(default_factory=list)
    jti: str = ""
    issuer: str = ""
    audience: str = ""
    issued_at: int = 0
    not_before: int = 0
    expires_at: int = 0


@dataclass(frozen=True)
class RefreshClaims:
    subject: UUID
    jti: str
    issuer: str = ""
    audience: str = ""
    issued_at: int = 0
    not_before: int = 0
    expires_at: int = 0


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_claims: AccessClaims
    refresh_claims: RefreshClaims


def _new_jti() -> str:
    return uuid4().hex


class TokenCodec:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic expiry tests.
        self._settings = settings or get_settings()
        self._time = time_source or time.time

    @property
    def refresh_ttl(self) -> int:
        return self._settings.jwt_refresh_ttl

    def _base_claims(self, ttl: int) -> dict[str, Any]:
        now = int(self._time())
        return {
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "iat": now,
            "nbf": now,
            "exp": now + ttl,
            "jti": _new_jti(),
        }

    def sign_access(self, *, user_id: UUID, tenant_id: str, roles: list[str]) -> tuple[str, AccessClaims]:
        payload = self._base_claims(self._settings.jwt_access_ttl)
        payload.update({"user_id": str(user_id), "tenant_id": tenant_id, "roles": list(roles)})
        token = jwt.encode(payload, self._settings.jwt_access_secret, algorithm=ALGORITHM)
        return token, self._access_from_payload(payload)

    def sign_refresh(self, *, user_id: UUID) -> tuple[str, RefreshClaims]:
        payload = self._base_claims(self._settings.jwt_refresh_ttl)
        payload["sub"] = str(user_id)
        token = jwt.encode(payload, self._settings.jwt_refresh_secret, algorithm=ALGORITHM)
        return token, self._refresh_from_payload(payload)

    def issue_pair(self, *, user_id: UUID, tenant_id: str, roles: list[str]) -> TokenPair:
        access_token, access_claims = self.sign_access(user_id=user_id, tenant_id=tenant_id, roles=roles)
        refresh_token, refresh_claims = self.sign_refresh(user_id=user_id)
        return TokenPair(access_token, refresh_token, access_claims, refresh_claims)

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, self._settings.jwt_access_secret)
        return self._access_from_payload(payload)

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self._settings.jwt_refresh_secret)
        return self._refresh_from_payload(payload)

    def peek_refresh(self, token: str) -> RefreshClaims | None:
        # Best-effort parse for logout: accept expired tokens but still require a valid signature.
        try:
            payload = jwt.decode(
                token,
                self._settings.jwt_refresh_secret,
                algorithms=[ALGORITHM],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
                options={"verify_exp": False, "verify_nbf": False},
            )
            return self._refresh_from_payload(payload)
        except (jwt.InvalidTokenError, TokenError):
            return None

    def _decode(self, token: str, secret: str) -> dict[str, Any]:
        # Pin the algorithm so "none" and any other alg are rejected before claims are trusted.
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise TokenError(reason=REASON_MALFORMED) from exc
        if header.get("alg") != ALGORITHM:
            raise TokenError(reason=REASON_WRONG_ALGORITHM)
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
                leeway=0,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenError(reason=REASON_EXPIRED) from exc
        except jwt.ImmatureSignatureError as exc:
            raise TokenError(reason=REASON_NOT_YET_VALID) from exc
        except jwt.InvalidIssuerError as exc:
            raise TokenError(reason=REASON_WRONG_ISSUER) from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenError(reason=REASON_WRONG_AUDIENCE) from exc
        except jwt.InvalidAlgorithmError as exc:
            raise TokenError(reason=REASON_WRONG_ALGORITHM) from exc
        except jwt.InvalidSignatureError as exc:
            raise TokenError(reason=REASON_INVALID_SIGNATURE) from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError(reason=REASON_MALFORMED) from exc

    def _access_from_payload(self, payload: dict[str, Any]) -> AccessClaims:
        try:
            user_id = UUID(str(payload["user_id"]))
            tenant_id = str(payload["tenant_id"])
        except (KeyError, ValueError) as exc:
            raise TokenError(reason=REASON_MALFORMED) from exc
        roles = payload.get("roles") or []
        if not isinstance(roles, list):
            raise TokenError(reason=REASON_MALFORMED)
        return AccessClaims(
            user_id=user_id,
            tenant_id=tenant_id,
            roles=[str(role) for role in roles],
            jti=str(payload.get("jti", "")),
            issuer=str(payload.get("iss", "")),
            audience=_first_audience(payload.get("aud")),
            issued_at=int(payload.get("iat", 0)),
            not_before=int(payload.get("nbf", 0)),
            expires_at=int(payload.get("exp", 0)),
        )

    def _refresh_from_payload(self, payload: dict[str, Any]) -> RefreshClaims:
        try:
            subject = UUID(str(payload["sub"]))
        except (KeyError, ValueError) as exc:
            raise TokenError(reason=REASON_MALFORMED) from exc
        jti = str(payload.get("jti") or "")
        if not jti:
            raise TokenError(reason=REASON_MALFORMED)
        return RefreshClaims(
            subject=subject,
            jti=jti,
            issuer=str(payload.get("iss", "")),
            audience=_first_audience(payload.get("aud")),
            issued_at=int(payload.get("iat", 0)),
            not_before=int(payload.get("nbf", 0)),
            expires_at=int(payload.get("exp", 0)),
        )

    def remaining_ttl(self, expires_at: int) -> int:
        # Revocation entries must outlive the token they shadow.
        return max(int(expires_at - self._time()), 1)


def _first_audience(value: Any) -> str:
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return str(value or "")
