from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point settings at throwaway stores before any application module is imported.
_DB_DIR = Path(tempfile.mkdtemp(prefix="sisfo-identity-tests-"))
os.environ["APP_ENV"] = "test"
os.environ["APP_POSTGRES_URL"] = f"sqlite+aiosqlite:///{_DB_DIR / 'identity.db'}"
os.environ["APP_BCRYPT_ROUNDS"] = "4"
os.environ["APP_RATE_LIMIT_ENABLED"] = "false"
os.environ["APP_JWT_ACCESS_SECRET"] = "test-access-secret-0123456789abcdef0123456789"
os.environ["APP_JWT_REFRESH_SECRET"] = "test-refresh-secret-0123456789abcdef012345678"

import pytest  # noqa: E402

from sisfo_identity.apps.api.rate_limit import reset_rate_limiter_state  # noqa: E402
from sisfo_identity.core.config import get_settings  # noqa: E402
from sisfo_identity.domain.models import Base  # noqa: E402
from sisfo_identity.persistence.db import engine  # noqa: E402
from sisfo_identity.services import events, kv  # noqa: E402
from sisfo_identity.services.audit import drain_pending_audits  # noqa: E402
from sisfo_identity.tests.utils.fakes import FakeClock, FakeRedis  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; background audit writes finish before teardown.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_pending_audits()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
async def fake_redis(clock: FakeClock) -> FakeRedis:
    # Every test gets an isolated key/value store and event bus.
    fake = FakeRedis(clock)
    kv.set_redis_client(fake)
    events.set_event_bus_client(fake)
    reset_rate_limiter_state()
    yield fake
    kv.reset_redis_state()
    events.reset_event_bus_state()
    reset_rate_limiter_state()


@pytest.fixture(autouse=True)
def settings_cache() -> None:
    # Tests that tweak APP_* variables get a fresh settings object afterwards.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
