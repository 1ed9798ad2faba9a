from __future__ import annotations

import pytest

from sisfo_identity.core.config import Settings, parse_duration
from sisfo_identity.core.errors import ConfigError


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [
        (900, 900),
        ("900", 900),
        ("15m", 900),
        ("168h", 604800),
        ("1h30m", 5400),
        ("45s", 45),
    ],
)
def test_parse_duration(raw, seconds: int) -> None:
    assert parse_duration(raw) == seconds


@pytest.mark.parametrize("raw", ["", "15x", "m15", "10 m"])
def test_parse_duration_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_duration_env_values(monkeypatch) -> None:
    monkeypatch.setenv("APP_JWT_ACCESS_TTL", "5m")
    assert Settings().jwt_access_ttl == 300


def test_redis_addr_normalization() -> None:
    assert Settings(redis_addr="cache:6380").redis_url == "redis://cache:6380/0"
    assert Settings(redis_addr="rediss://cache:6380/2").redis_url == "rediss://cache:6380/2"


def test_rabbit_url_alias_feeds_event_broker(monkeypatch) -> None:
    monkeypatch.setenv("APP_RABBIT_URL", "redis://broker:6379/1")
    assert Settings().events_url == "redis://broker:6379/1"


def test_runtime_validation_in_production() -> None:
    Settings(env="test").validate_for_runtime()
    with pytest.raises(ConfigError):
        Settings(
            env="production", jwt_access_secret="dev-access", jwt_refresh_secret="dev-refresh"
        ).validate_for_runtime()
    with pytest.raises(ConfigError):
        Settings(env="production", jwt_access_secret="same-secret", jwt_refresh_secret="same-secret").validate_for_runtime()
    Settings(
        env="production", jwt_access_secret="prod-access-secret", jwt_refresh_secret="prod-refresh-secret"
    ).validate_for_runtime()
    with pytest.raises(ConfigError):
        Settings(env="test", jwt_issuer="").validate_for_runtime()
