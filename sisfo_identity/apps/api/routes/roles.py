from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.apps.api.deps import get_db, require_permission
from sisfo_identity.apps.api.response import success_response
from sisfo_identity.apps.api.routes.users import role_response
from sisfo_identity.core.errors import NotFoundError
from sisfo_identity.domain.models import Permission
from sisfo_identity.persistence.repos import permissions as permissions_repo
from sisfo_identity.persistence.repos import roles as roles_repo
from sisfo_identity.persistence.repos.audit import clamp_page
from sisfo_identity.services import identity_admin
from sisfo_identity.services.audit import record_audit
from sisfo_identity.services.auth.tokens import AccessClaims


router = APIRouter(tags=["roles"])


class CreateRoleRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class CreatePermissionRequest(BaseModel):
    permission: str = Field(min_length=3)
    description: str | None = None


class GrantPermissionRequest(BaseModel):
    permission: str = Field(min_length=3)


def _permission_response(permission: Permission) -> dict[str, str]:
    return {
        "id": str(permission.id),
        "resource": permission.resource,
        "action": permission.action,
        "permission": f"{permission.resource}:{permission.action}",
    }


@router.post("/roles", status_code=status.HTTP_201_CREATED)
async def create_role(
    payload: CreateRoleRequest,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await identity_admin.create_role(
        db, tenant_id=claims.tenant_id, name=payload.name, description=payload.description
    )
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="roles.create",
        resource_type="role",
        resource_id=role.id,
        new_values={"name": role.name},
        request=request,
    )
    return success_response(request=request, data=role_response(role))


@router.get("/roles")
async def list_roles(
    request: Request,
    limit: int | None = Query(default=None),
    offset: int | None = Query(default=None),
    claims: AccessClaims = Depends(require_permission("roles:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    limit, offset = clamp_page(limit, offset)
    items, total = await roles_repo.list_roles(db, tenant_id=claims.tenant_id, offset=offset, limit=limit)
    return success_response(
        request=request,
        data={"items": [role_response(role).model_dump() for role in items], "total": total},
    )


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: UUID,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity_admin.delete_role(db, tenant_id=claims.tenant_id, role_id=role_id)
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="roles.delete",
        resource_type="role",
        resource_id=role_id,
        request=request,
    )
    return success_response(request=request, data={"message": "role deleted"})


@router.get("/roles/{role_id}/permissions")
async def list_role_permissions(
    role_id: UUID,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await roles_repo.get_role(db, tenant_id=claims.tenant_id, role_id=role_id)
    if role is None:
        raise NotFoundError("role not found")
    items = await roles_repo.list_role_permissions(db, role_id=role.id)
    return success_response(request=request, data={"items": [_permission_response(p) for p in items]})


@router.post("/roles/{role_id}/permissions", status_code=status.HTTP_201_CREATED)
async def grant_permission(
    role_id: UUID,
    payload: GrantPermissionRequest,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    granted = await identity_admin.grant_permission(
        db, tenant_id=claims.tenant_id, role_id=role_id, permission=payload.permission
    )
    await record_audit(
        session=db,
        tenant_id=claims.tenant_id,
        user_id=claims.user_id,
        action="roles.grant_permission",
        resource_type="role",
        resource_id=role_id,
        new_values={"permission": f"{granted.resource}:{granted.action}"},
        request=request,
    )
    return success_response(request=request, data=_permission_response(granted))


@router.post("/permissions", status_code=status.HTTP_201_CREATED)
async def create_permission(
    payload: CreatePermissionRequest,
    request: Request,
    claims: AccessClaims = Depends(require_permission("roles:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    permission = await identity_admin.ensure_permission(db, payload.permission, description=payload.description)
    await db.commit()
    return success_response(request=request, data=_permission_response(permission))


@router.get("/permissions")
async def list_permissions(
    request: Request,
    limit: int | None = Query(default=None),
    offset: int | None = Query(default=None),
    claims: AccessClaims = Depends(require_permission("roles:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    limit, offset = clamp_page(limit, offset)
    items = await permissions_repo.list_permissions(db, offset=offset, limit=limit)
    return success_response(request=request, data={"items": [_permission_response(p) for p in items]})
