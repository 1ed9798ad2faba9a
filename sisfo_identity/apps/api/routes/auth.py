from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from sisfo_identity.apps.api.deps import (
    get_current_claims,
    get_password_engine,
    get_session_engine,
)
from sisfo_identity.apps.api.response import success_response
from sisfo_identity.core.config import get_settings
from sisfo_identity.services.auth.password_flows import PasswordEngine
from sisfo_identity.services.auth.sessions import SessionEngine
from sisfo_identity.services.auth.tokens import AccessClaims, TokenPair


router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=1)
    new_password: str = Field(min_length=1)


class ForgotPasswordRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    email: str = Field(min_length=3)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=get_settings().jwt_access_ttl,
    )


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    engine: SessionEngine = Depends(get_session_engine),
) -> dict:
    pair = await engine.login(tenant_id=payload.tenant_id, email=payload.email, password=payload.password)
    return success_response(request=request, data=_pair_response(pair))


@router.post("/refresh")
async def refresh(
    payload: RefreshRequest,
    request: Request,
    engine: SessionEngine = Depends(get_session_engine),
) -> dict:
    pair = await engine.refresh(payload.refresh_token)
    return success_response(request=request, data=_pair_response(pair))


@router.post("/logout")
async def logout(request: Request, engine: SessionEngine = Depends(get_session_engine)) -> dict:
    # Accept any body shape; logout never fails from the client's view.
    refresh_token: str | None = None
    try:
        body = await request.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("refresh_token"), str):
        refresh_token = body["refresh_token"] or None
    await engine.logout(refresh_token)
    return success_response(request=request, data={"message": "logged out"})


@router.get("/me")
async def me(
    request: Request,
    claims: AccessClaims = Depends(get_current_claims),
    engine: SessionEngine = Depends(get_session_engine),
) -> dict:
    profile = await engine.me(claims)
    return success_response(request=request, data=profile.as_dict())


@router.post("/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    claims: AccessClaims = Depends(get_current_claims),
    engine: PasswordEngine = Depends(get_password_engine),
) -> dict:
    await engine.change_password(
        claims, old_password=payload.old_password, new_password=payload.new_password
    )
    return success_response(request=request, data={"message": "password changed"})


@router.post("/forgot-password")
async def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    engine: PasswordEngine = Depends(get_password_engine),
) -> dict:
    token = await engine.forgot_password(tenant_id=payload.tenant_id, email=payload.email)
    data: dict[str, str] = {"message": "if the account exists, a reset link has been sent"}
    # Echo the token only in development so end-to-end flows run without mail delivery.
    if token and get_settings().is_dev:
        data["reset_token"] = token
    return success_response(request=request, data=data)


@router.post("/reset-password")
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    engine: PasswordEngine = Depends(get_password_engine),
) -> dict:
    await engine.reset_password(token=payload.token, new_password=payload.password)
    return success_response(request=request, data={"message": "password reset"})
