from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.apps.api.deps import get_db
from sisfo_identity.apps.api.response import success_response
from sisfo_identity.core.config import get_settings
from sisfo_identity.core.errors import NotFoundError
from sisfo_identity.services import identity_admin
from sisfo_identity.services.audit import record_audit


router = APIRouter(prefix="/auth/dev", tags=["dev"])


class BootstrapUserRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


@router.post("/bootstrap-user", status_code=status.HTTP_201_CREATED)
async def bootstrap_user(
    payload: BootstrapUserRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Unauthenticated on purpose; the route only exists outside production.
    if not get_settings().is_dev:
        raise NotFoundError("not found")
    user = await identity_admin.register_user(
        db, tenant_id=payload.tenant_id, email=payload.email, password=payload.password
    )
    await record_audit(
        session=db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action="users.bootstrap",
        resource_type="user",
        resource_id=user.id,
        new_values={"email": user.email},
        request=request,
    )
    return success_response(
        request=request,
        data={"id": str(user.id), "tenant_id": user.tenant_id, "email": user.email},
    )
