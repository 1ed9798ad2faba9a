from __future__ import annotations

import base64
import json
import time
from uuid import uuid4

import jwt
import pytest

from sisfo_identity.core.config import Settings, get_settings
from sisfo_identity.services.auth.tokens import (
    REASON_EXPIRED,
    REASON_INVALID_SIGNATURE,
    REASON_MALFORMED,
    REASON_NOT_YET_VALID,
    REASON_WRONG_ALGORITHM,
    REASON_WRONG_AUDIENCE,
    REASON_WRONG_ISSUER,
    TokenCodec,
    TokenError,
)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _reason(codec: TokenCodec, token: str, *, refresh: bool = False) -> str:
    with pytest.raises(TokenError) as excinfo:
        if refresh:
            codec.verify_refresh(token)
        else:
            codec.verify_access(token)
    return excinfo.value.reason


def test_access_token_round_trip() -> None:
    codec = TokenCodec()
    user_id = uuid4()
    token, issued = codec.sign_access(user_id=user_id, tenant_id="t1", roles=["admin", "teacher"])

    claims = codec.verify_access(token)

    assert claims.user_id == user_id
    assert claims.tenant_id == "t1"
    assert claims.roles == ["admin", "teacher"]
    assert claims.jti == issued.jti
    assert claims.expires_at - claims.issued_at == get_settings().jwt_access_ttl


def test_each_issued_pair_has_fresh_ids() -> None:
    codec = TokenCodec()
    user_id = uuid4()
    first = codec.issue_pair(user_id=user_id, tenant_id="t1", roles=[])
    second = codec.issue_pair(user_id=user_id, tenant_id="t1", roles=[])
    assert first.refresh_claims.jti != second.refresh_claims.jti
    assert first.access_claims.jti != first.refresh_claims.jti


def test_access_and_refresh_secrets_do_not_cross_validate() -> None:
    codec = TokenCodec()
    pair = codec.issue_pair(user_id=uuid4(), tenant_id="t1", roles=[])
    assert _reason(codec, pair.refresh_token) == REASON_INVALID_SIGNATURE
    assert _reason(codec, pair.access_token, refresh=True) == REASON_INVALID_SIGNATURE


def test_alg_none_is_rejected() -> None:
    codec = TokenCodec()
    now = int(time.time())
    payload = {
        "user_id": str(uuid4()),
        "tenant_id": "t1",
        "roles": ["admin"],
        "iss": get_settings().jwt_issuer,
        "aud": get_settings().jwt_audience,
        "iat": now,
        "nbf": now,
        "exp": now + 600,
        "jti": "forged",
    }
    token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
    assert _reason(codec, token) == REASON_WRONG_ALGORITHM


def test_other_hmac_algorithm_is_rejected() -> None:
    settings = get_settings()
    now = int(time.time())
    payload = {
        "user_id": str(uuid4()),
        "tenant_id": "t1",
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "nbf": now,
        "exp": now + 600,
        "jti": "x",
    }
    token = jwt.encode(payload, settings.jwt_access_secret, algorithm="HS512")
    assert _reason(TokenCodec(settings), token) == REASON_WRONG_ALGORITHM


def test_wrong_issuer_and_audience() -> None:
    verifier = TokenCodec()
    foreign_issuer = TokenCodec(Settings(jwt_issuer="someone-else"))
    foreign_audience = TokenCodec(Settings(jwt_audience="other-api"))

    token, _ = foreign_issuer.sign_access(user_id=uuid4(), tenant_id="t1", roles=[])
    assert _reason(verifier, token) == REASON_WRONG_ISSUER

    token, _ = foreign_audience.sign_access(user_id=uuid4(), tenant_id="t1", roles=[])
    assert _reason(verifier, token) == REASON_WRONG_AUDIENCE


def test_expired_and_not_yet_valid_tokens() -> None:
    verifier = TokenCodec()
    past = TokenCodec(time_source=lambda: time.time() - 7200)
    future = TokenCodec(time_source=lambda: time.time() + 7200)

    token, _ = past.sign_access(user_id=uuid4(), tenant_id="t1", roles=[])
    assert _reason(verifier, token) == REASON_EXPIRED

    token, _ = future.sign_access(user_id=uuid4(), tenant_id="t1", roles=[])
    assert _reason(verifier, token) == REASON_NOT_YET_VALID


def test_missing_required_claim_is_malformed() -> None:
    settings = get_settings()
    now = int(time.time())
    token = jwt.encode(
        {
            "user_id": str(uuid4()),
            "tenant_id": "t1",
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "iat": now,
            "nbf": now,
            "exp": now + 600,
        },
        settings.jwt_access_secret,
        algorithm="HS256",
    )
    assert _reason(TokenCodec(settings), token) == REASON_MALFORMED
    assert _reason(TokenCodec(settings), "not-a-token") == REASON_MALFORMED


def test_peek_refresh_ignores_expiry_but_not_signature() -> None:
    past = TokenCodec(time_source=lambda: time.time() - 30 * 24 * 3600)
    user_id = uuid4()
    token, issued = past.sign_refresh(user_id=user_id)

    codec = TokenCodec()
    assert _reason(codec, token, refresh=True) == REASON_EXPIRED
    peeked = codec.peek_refresh(token)
    assert peeked is not None
    assert peeked.subject == user_id
    assert peeked.jti == issued.jti

    access, _ = codec.sign_access(user_id=user_id, tenant_id="t1", roles=[])
    assert codec.peek_refresh(access) is None
    assert codec.peek_refresh("garbage") is None


def test_remaining_ttl_never_drops_below_one_second() -> None:
    codec = TokenCodec(time_source=lambda: 1000.0)
    assert codec.remaining_ttl(1600) == 600
    assert codec.remaining_ttl(900) == 1
