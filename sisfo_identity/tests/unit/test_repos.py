from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from sisfo_identity.domain.models import AuditLog, PasswordHistory
from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.persistence.repos import audit as audit_repo
from sisfo_identity.persistence.repos import password_history as history_repo
from sisfo_identity.persistence.repos import password_resets as resets_repo
from sisfo_identity.persistence.repos import roles as roles_repo
from sisfo_identity.services.maintenance import audit_cutoff, prune_audit_logs
from sisfo_identity.tests.utils.auth import seed_user, unique_tenant


def test_clamp_page_defaults_and_caps() -> None:
    assert audit_repo.clamp_page(None, None) == (audit_repo.DEFAULT_LIMIT, 0)
    assert audit_repo.clamp_page(0, -5) == (audit_repo.DEFAULT_LIMIT, 0)
    assert audit_repo.clamp_page(1000, 40) == (audit_repo.MAX_LIMIT, 40)


@pytest.mark.asyncio
async def test_password_history_prune_keeps_newest() -> None:
    user = await seed_user(tenant_id=unique_tenant(), email="hist@school.test")
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    async with SessionLocal() as session:
        for index in range(5):
            session.add(
                PasswordHistory(user_id=user.id, password_hash=f"hash-{index}", created_at=base + timedelta(minutes=index))
            )
        await session.flush()

        await history_repo.prune(session, user_id=user.id, keep=3)
        await session.commit()

        hashes = await history_repo.recent_hashes(session, user_id=user.id, limit=10)
    # The registration entry is the newest row, so two seeded hashes survive alongside it.
    assert len(hashes) == 3
    assert hashes[1:] == ["hash-4", "hash-3"]


@pytest.mark.asyncio
async def test_reset_mark_used_only_once() -> None:
    tenant_id = unique_tenant()
    user = await seed_user(tenant_id=tenant_id, email="reset@school.test")
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        reset = await resets_repo.create_reset(
            session, tenant_id=tenant_id, user_id=user.id, token_hash="abc", expires_at=now + timedelta(minutes=30)
        )
        await session.commit()

        assert await resets_repo.find_valid_reset(session, token_hash="abc", now=now) is not None
        assert await resets_repo.mark_used(session, reset_id=reset.id, now=now)
        assert not await resets_repo.mark_used(session, reset_id=reset.id, now=now)
        await session.commit()
        assert await resets_repo.find_valid_reset(session, token_hash="abc", now=now) is None


@pytest.mark.asyncio
async def test_expired_reset_is_not_valid() -> None:
    tenant_id = unique_tenant()
    user = await seed_user(tenant_id=tenant_id, email="late@school.test")
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        await resets_repo.create_reset(
            session, tenant_id=tenant_id, user_id=user.id, token_hash="late", expires_at=now - timedelta(seconds=1)
        )
        await session.commit()
        assert await resets_repo.find_valid_reset(session, token_hash="late", now=now) is None


@pytest.mark.asyncio
async def test_role_assignment_is_idempotent() -> None:
    tenant_id = unique_tenant()
    user = await seed_user(tenant_id=tenant_id, email="twice@school.test", role="teacher")
    async with SessionLocal() as session:
        role = await roles_repo.get_role_by_name(session, tenant_id=tenant_id, name="teacher")
        assert role is not None
        assert not await roles_repo.assign_user_role(session, user_id=user.id, role_id=role.id)
        await session.commit()
        names = await roles_repo.role_names_for_user(session, tenant_id=tenant_id, user_id=user.id)
    assert names == ["teacher"]


@pytest.mark.asyncio
async def test_prune_audit_logs_respects_retention() -> None:
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    cutoff = audit_cutoff(now)
    async with SessionLocal() as session:
        session.add(AuditLog(tenant_id="t1", action="old", resource_type="x", created_at=cutoff - timedelta(days=1)))
        session.add(AuditLog(tenant_id="t1", action="new", resource_type="x", created_at=cutoff + timedelta(days=1)))
        await session.commit()

        deleted = await prune_audit_logs(session, now=now)
        await session.commit()
        remaining = await session.scalar(select(func.count()).select_from(AuditLog))

    assert deleted == 1
    assert remaining == 1


def test_escape_like_quotes_wildcards() -> None:
    assert audit_repo.escape_like("50%_a\\b") == "50\\%\\_a\\\\b"


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally() -> None:
    tenant_id = unique_tenant()
    async with SessionLocal() as session:
        session.add(AuditLog(tenant_id=tenant_id, action="auth.login", resource_type="session"))
        session.add(
            AuditLog(tenant_id=tenant_id, action="report.export", resource_type="report", new_values={"label": "50%_done"})
        )
        await session.commit()

        _, percent_total = await audit_repo.search_logs(session, tenant_id=tenant_id, query="%")
        _, underscore_total = await audit_repo.search_logs(session, tenant_id=tenant_id, query="_")
        _, plain_total = await audit_repo.search_logs(session, tenant_id=tenant_id, query="LOGIN")

    assert percent_total == 1
    assert underscore_total == 1
    assert plain_total == 1


def test_audit_cutoff_uses_retention_days() -> None:
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    assert audit_cutoff(now, retention_days=10) == now - timedelta(days=10)


@pytest.mark.asyncio
async def test_seed_system_roles_is_idempotent() -> None:
    from sisfo_identity.services.identity_admin import SYSTEM_ROLE_PERMISSIONS, seed_system_roles

    tenant_id = unique_tenant()
    async with SessionLocal() as session:
        first = await seed_system_roles(session, tenant_id=tenant_id)
        await session.commit()
        second = await seed_system_roles(session, tenant_id=tenant_id)
        await session.commit()

        assert {name: role.id for name, role in first.items()} == {name: role.id for name, role in second.items()}
        granted = await roles_repo.list_role_permissions(session, role_id=first["admin"].id)
    assert sorted(f"{p.resource}:{p.action}" for p in granted) == sorted(SYSTEM_ROLE_PERMISSIONS["admin"])
    assert all(role.is_system_role for role in first.values())
