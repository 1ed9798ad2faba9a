from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from httpx import ASGITransport, AsyncClient

from sisfo_identity.apps.api.main import create_app
from sisfo_identity.domain.models import User
from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.persistence.repos import roles as roles_repo
from sisfo_identity.services import identity_admin


TEST_PASSWORD = "Password123!"
NEW_PASSWORD = "NewPass1234!"


def unique_tenant() -> str:
    # Unique tenant ids keep assertions independent of other rows.
    return f"t-{uuid4().hex[:12]}"


def api_client() -> AsyncClient:
    app = create_app()
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def seed_user(
    *,
    tenant_id: str,
    email: str,
    password: str = TEST_PASSWORD,
    role: str | None = None,
    permissions: Iterable[str] = (),
    is_active: bool = True,
) -> User:
    # Provision a user and optionally a role carrying the given permissions.
    async with SessionLocal() as session:
        user = await identity_admin.register_user(
            session, tenant_id=tenant_id, email=email, password=password, is_active=is_active
        )
        if role is not None:
            granted = await identity_admin.assign_role_by_name(
                session, tenant_id=tenant_id, user_id=user.id, role_name=role
            )
            for permission in permissions:
                created = await identity_admin.ensure_permission(session, permission)
                await roles_repo.grant_permission(session, role_id=granted.id, permission_id=created.id)
        await session.commit()
        return user


async def login(client: AsyncClient, *, tenant_id: str, email: str, password: str = TEST_PASSWORD) -> dict:
    response = await client.post(
        "/api/v1/auth/login",
        json={"tenant_id": tenant_id, "email": email, "password": password},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


async def seed_admin(tenant_id: str, email: str = "admin@school.test") -> User:
    return await seed_user(
        tenant_id=tenant_id,
        email=email,
        role="admin",
        permissions=identity_admin.SYSTEM_ROLE_PERMISSIONS["admin"],
    )
