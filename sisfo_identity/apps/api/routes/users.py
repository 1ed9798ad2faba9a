from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.apps.api.deps import get_db, require_permission
from sisfo_identity.apps.api.response import success_response
from sisfo_identity.domain.models import Role, User
from sisfo_identity.persistence.repos import roles as roles_repo
from sisfo_identity.persistence.repos import users as users_repo
from sisfo_identity.persistence.repos.audit import clamp_page
from sisfo_identity.services import identity_admin
from sisfo_identity.services.audit import record_audit
from sisfo_identity.services.auth.tokens import AccessClaims


router = APIRouter(prefix="/users", tags=["users"])


class CreateUserRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    is_active: bool = True


class UpdateUserRequest(BaseModel):
    email: str | None = None
    password: str | None = None
    is_active: bool | None = None


class AssignRoleRequest(BaseModel):
    role: str = Field(min_length=1)


class UserResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    is_active: bool
    created_at: str | None


class RoleResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    is_system_role: bool


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=str(user.id),
        tenant_id=user.tenant_id,
        email=user.email,
        is_active=user.is_active,
        created_at=user.created_at.isoformat() if user.created_at else None,
    )


def role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=str(role.id),
        tenant_id=role.tenant_id,
        name=role.name,
        is_system_role=role.is_system_role,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: CreateUserRequest,
    request: Request,
    claims: AccessClaims = Depends(require_permission("users:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # New users always land in the caller's tenant.
    user = await identity_admin.register_user(
        db,
        tenant_id=claims.tenant_id,
        email=payload.email,
        password=payload.password,
        is_active=payload.is_active,
    )
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="users.create",
        resource_type="user",
        resource_id=user.id,
        new_values={"email": user.email, "is_active": user.is_active},
        request=request,
    )
    return success_response(request=request, data=_user_response(user))


@router.get("")
async def list_users(
    request: Request,
    limit: int | None = Query(default=None),
    offset: int | None = Query(default=None),
    claims: AccessClaims = Depends(require_permission("users:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    limit, offset = clamp_page(limit, offset)
    items, total = await users_repo.list_users(db, tenant_id=claims.tenant_id, offset=offset, limit=limit)
    return success_response(
        request=request,
        data={"items": [_user_response(user).model_dump() for user in items], "total": total},
    )


@router.get("/{user_id}")
async def get_user(
    user_id: UUID,
    request: Request,
    claims: AccessClaims = Depends(require_permission("users:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity_admin.get_user_or_404(db, tenant_id=claims.tenant_id, user_id=user_id)
    return success_response(request=request, data=_user_response(user))


@router.patch("/{user_id}")
async def update_user(
    user_id: UUID,
    payload: UpdateUserRequest,
    request: Request,
    claims: AccessClaims = Depends(require_permission("users:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await identity_admin.update_user(
        db,
        tenant_id=claims.tenant_id,
        user_id=user_id,
        email=payload.email,
        password=payload.password,
        is_active=payload.is_active,
    )
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="users.update",
        resource_type="user",
        resource_id=user.id,
        new_values=payload.model_dump(exclude_none=True),
        request=request,
    )
    return success_response(request=request, data=_user_response(user))


@router.delete("/{user_id}")
async def delete_user(
    user_id: UUID,
    request: Request,
    claims: AccessClaims = Depends(require_permission("users:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity_admin.delete_user(db, tenant_id=claims.tenant_id, user_id=user_id)
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="users.delete",
        resource_type="user",
        resource_id=user_id,
        request=request,
    )
    return success_response(request=request, data={"message": "user deleted"})


@router.post("/{user_id}/roles", status_code=status.HTTP_201_CREATED)
async def assign_role(
    user_id: UUID,
    payload: AssignRoleRequest,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await identity_admin.assign_role_by_name(
        db, tenant_id=claims.tenant_id, user_id=user_id, role_name=payload.role
    )
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="users.assign_role",
        resource_type="user",
        resource_id=user_id,
        new_values={"role": role.name},
        request=request,
    )
    return success_response(request=request, data=role_response(role))


@router.get("/{user_id}/roles")
async def list_user_roles(
    user_id: UUID,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity_admin.get_user_or_404(db, tenant_id=claims.tenant_id, user_id=user_id)
    roles = await roles_repo.list_user_roles(db, tenant_id=claims.tenant_id, user_id=user_id)
    return success_response(request=request, data={"items": [role_response(r).model_dump() for r in roles]})


@router.delete("/{user_id}/roles/{role_id}")
async def unassign_role(
    user_id: UUID,
    role_id: UUID,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity_admin.unassign_role(db, tenant_id=claims.tenant_id, user_id=user_id, role_id=role_id)
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="users.unassign_role",
        resource_type="user",
        resource_id=user_id,
        new_values={"role_id": str(role_id)},
        request=request,
    )
    return success_response(request=request, data={"message": "role unassigned"})
