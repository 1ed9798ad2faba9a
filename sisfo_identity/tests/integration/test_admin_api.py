from __future__ import annotations

import csv
import io

import pytest

from sisfo_identity.tests.utils.auth import (
    TEST_PASSWORD,
    api_client,
    bearer,
    login,
    seed_admin,
    seed_user,
    unique_tenant,
)


async def _admin_headers(client, tenant_id: str) -> dict[str, str]:
    await seed_admin(tenant_id)
    tokens = await login(client, tenant_id=tenant_id, email="admin@school.test")
    return bearer(tokens["access_token"])


@pytest.mark.asyncio
async def test_permission_gate_returns_403_then_200() -> None:
    tenant_id = unique_tenant()
    await seed_user(tenant_id=tenant_id, email="siswa@school.test", role="student", permissions=["grades:read"])

    async with api_client() as client:
        student = await login(client, tenant_id=tenant_id, email="siswa@school.test")
        denied = await client.get("/api/v1/users", headers=bearer(student["access_token"]))
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "3001"

        headers = await _admin_headers(client, tenant_id)
        allowed = await client.get("/api/v1/users", headers=headers)

    assert allowed.status_code == 200
    emails = {item["email"] for item in allowed.json()["data"]["items"]}
    assert emails == {"siswa@school.test", "admin@school.test"}


@pytest.mark.asyncio
async def test_user_lifecycle() -> None:
    tenant_id = unique_tenant()
    async with api_client() as client:
        headers = await _admin_headers(client, tenant_id)

        created = await client.post(
            "/api/v1/users", json={"email": "Wali@School.test", "password": TEST_PASSWORD}, headers=headers
        )
        assert created.status_code == 201
        user = created.json()["data"]
        assert user["email"] == "wali@school.test"
        assert user["tenant_id"] == tenant_id

        duplicate = await client.post(
            "/api/v1/users", json={"email": "wali@school.test", "password": TEST_PASSWORD}, headers=headers
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "5001"

        weak = await client.post(
            "/api/v1/users", json={"email": "weak@school.test", "password": "weak"}, headers=headers
        )
        assert weak.status_code == 400

        assigned = await client.post(
            f"/api/v1/users/{user['id']}/roles", json={"role": "parent"}, headers=headers
        )
        assert assigned.status_code == 201
        roles = await client.get(f"/api/v1/users/{user['id']}/roles", headers=headers)
        assert [role["name"] for role in roles.json()["data"]["items"]] == ["parent"]

        updated = await client.patch(f"/api/v1/users/{user['id']}", json={"is_active": False}, headers=headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["is_active"] is False

        deleted = await client.delete(f"/api/v1/users/{user['id']}", headers=headers)
        assert deleted.status_code == 200
        missing = await client.get(f"/api/v1/users/{user['id']}", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "5002"

        # The email is free again once the previous holder is soft-deleted.
        recreated = await client.post(
            "/api/v1/users", json={"email": "wali@school.test", "password": TEST_PASSWORD}, headers=headers
        )
        assert recreated.status_code == 201


@pytest.mark.asyncio
async def test_users_are_tenant_scoped() -> None:
    tenant_a, tenant_b = unique_tenant(), unique_tenant()
    other = await seed_user(tenant_id=tenant_b, email="b@school.test")
    async with api_client() as client:
        headers = await _admin_headers(client, tenant_a)
        response = await client.get(f"/api/v1/users/{other.id}", headers=headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_roles_and_permissions() -> None:
    tenant_id = unique_tenant()
    async with api_client() as client:
        headers = await _admin_headers(client, tenant_id)

        created = await client.post("/api/v1/roles", json={"name": "librarian"}, headers=headers)
        assert created.status_code == 201
        role_id = created.json()["data"]["id"]

        conflict = await client.post("/api/v1/roles", json={"name": "librarian"}, headers=headers)
        assert conflict.status_code == 409

        granted = await client.post(
            f"/api/v1/roles/{role_id}/permissions", json={"permission": "books:lend"}, headers=headers
        )
        assert granted.status_code == 201
        assert granted.json()["data"]["permission"] == "books:lend"

        bad = await client.post(
            f"/api/v1/roles/{role_id}/permissions", json={"permission": "books"}, headers=headers
        )
        assert bad.status_code == 400

        listed = await client.get(f"/api/v1/roles/{role_id}/permissions", headers=headers)
        assert [p["permission"] for p in listed.json()["data"]["items"]] == ["books:lend"]

        names = {role["name"] for role in (await client.get("/api/v1/roles", headers=headers)).json()["data"]["items"]}
        assert {"admin", "librarian"} <= names

        deleted = await client.delete(f"/api/v1/roles/{role_id}", headers=headers)
        assert deleted.status_code == 200
        gone = await client.get(f"/api/v1/roles/{role_id}/permissions", headers=headers)
        assert gone.status_code == 404


@pytest.mark.asyncio
async def test_audit_list_search_and_export() -> None:
    tenant_id = unique_tenant()
    async with api_client() as client:
        headers = await _admin_headers(client, tenant_id)
        await client.post("/api/v1/roles", json={"name": "coach"}, headers=headers)

        listed = await client.get("/api/v1/audit-logs", params={"action": "roles.create"}, headers=headers)
        assert listed.status_code == 200
        data = listed.json()["data"]
        assert data["total"] == 1
        assert data["items"][0]["new_values"] == {"name": "coach"}
        assert data["limit"] == 20

        all_logins = await client.get("/api/v1/audit-logs", params={"action": "auth.login"}, headers=headers)
        assert all_logins.json()["data"]["total"] >= 1

        search = await client.get("/api/v1/audit-logs/search", params={"q": "coach"}, headers=headers)
        assert search.status_code == 200
        assert search.json()["data"]["total"] == 1

        empty_query = await client.get("/api/v1/audit-logs/search", params={"q": "  "}, headers=headers)
        assert empty_query.status_code == 400

        bad_range = await client.get(
            "/api/v1/audit-logs",
            params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
            headers=headers,
        )
        assert bad_range.status_code == 400

        exported = await client.get("/api/v1/audit-logs/export", headers=headers)

    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(exported.text)))
    assert rows[0] == ["id", "tenant_id", "user_id", "action", "resource_type", "resource_id", "created_at"]
    assert any(row[3] == "roles.create" for row in rows[1:])
    assert all(row[1] == tenant_id for row in rows[1:])


@pytest.mark.asyncio
async def test_audit_logs_do_not_cross_tenants() -> None:
    tenant_a, tenant_b = unique_tenant(), unique_tenant()
    async with api_client() as client:
        headers_b = await _admin_headers(client, tenant_b)
        await seed_admin(tenant_a, email="other-admin@school.test")
        await login(client, tenant_id=tenant_a, email="other-admin@school.test")

        response = await client.get("/api/v1/audit-logs", headers=headers_b)
    assert all(item["tenant_id"] == tenant_b for item in response.json()["data"]["items"])
