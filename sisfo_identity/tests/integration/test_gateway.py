from __future__ import annotations

import json
from uuid import uuid4

import httpx
import pytest

from sisfo_identity.apps.gateway.main import create_app
from sisfo_identity.core.config import get_settings
from sisfo_identity.services.auth.tokens import TokenCodec
from sisfo_identity.tests.utils.auth import bearer
from sisfo_identity.tests.utils.fakes import FakeClock


class Upstreams:
    """Records proxied requests and answers from a per-host script."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.status: dict[str, int] = {}
        self.down: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        host = request.url.host
        if host in self.down:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(
            self.status.get(host, 200),
            json={"host": host, "path": request.url.path},
            headers={"X-Upstream": host, "Connection": "close"},
        )

    def hosts(self) -> list[str]:
        return [call.url.host for call in self.calls]


def _gateway(upstreams: dict[str, list[str]], backend: Upstreams, clock: FakeClock | None = None) -> httpx.AsyncClient:
    app = create_app(upstreams, transport=httpx.MockTransport(backend), time_source=clock)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway")


def _access_token() -> str:
    token, _ = TokenCodec().sign_access(user_id=uuid4(), tenant_id="t1", roles=["teacher"])
    return token


@pytest.mark.asyncio
async def test_public_route_is_forwarded_with_headers() -> None:
    backend = Upstreams()
    async with _gateway({"auth": ["http://auth-1"]}, backend) as client:
        response = await client.post(
            "/api/v1/auth/login?x=1",
            json={"email": "a@school.test"},
            headers={"X-Request-ID": "gw-1", "X-Forwarded-For": "203.0.113.9"},
        )

    assert response.status_code == 200
    assert response.json() == {"host": "auth-1", "path": "/api/v1/auth/login"}
    assert response.headers["X-Upstream"] == "auth-1"
    assert response.headers["X-Request-ID"] == "gw-1"
    forwarded = backend.calls[0]
    assert forwarded.url.params["x"] == "1"
    assert forwarded.headers["x-request-id"] == "gw-1"
    assert forwarded.headers["x-forwarded-for"].startswith("203.0.113.9, ")
    assert json.loads(forwarded.content) == {"email": "a@school.test"}


@pytest.mark.asyncio
async def test_protected_route_requires_valid_access_token() -> None:
    backend = Upstreams()
    async with _gateway({"academic": ["http://academic-1"]}, backend) as client:
        missing = await client.get("/api/v1/schools/1")
        invalid = await client.get("/api/v1/schools/1", headers=bearer("nope"))
        allowed = await client.get("/api/v1/schools/1", headers=bearer(_access_token()))

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "2001"
    assert invalid.status_code == 401
    assert allowed.status_code == 200
    assert backend.hosts() == ["academic-1"]


@pytest.mark.asyncio
async def test_unknown_path_and_unconfigured_group() -> None:
    backend = Upstreams()
    async with _gateway({"auth": ["http://auth-1"]}, backend) as client:
        unknown = await client.get("/api/v1/nothing-here")
        unconfigured = await client.get("/api/v1/finance/invoices", headers=bearer(_access_token()))

    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "5002"
    assert unconfigured.status_code == 503
    assert unconfigured.json()["error"]["code"] == "1001"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_round_robin_across_upstreams() -> None:
    backend = Upstreams()
    async with _gateway({"auth": ["http://auth-1", "http://auth-2"]}, backend) as client:
        for _ in range(4):
            await client.get("/api/v1/health")
    assert backend.hosts() == ["auth-1", "auth-2", "auth-1", "auth-2"]


@pytest.mark.asyncio
async def test_transport_failure_is_502_and_trips_breaker(monkeypatch) -> None:
    monkeypatch.setenv("APP_GATEWAY_BREAKER_THRESHOLD", "2")
    monkeypatch.setenv("APP_GATEWAY_BREAKER_OPEN_SECONDS", "30")
    get_settings.cache_clear()
    clock = FakeClock()
    backend = Upstreams()
    backend.down.add("auth-1")

    async with _gateway({"auth": ["http://auth-1", "http://auth-2"]}, backend, clock) as client:
        statuses = [(await client.get("/api/v1/health")).status_code for _ in range(4)]
        # auth-1 failed twice and is now skipped.
        assert statuses == [502, 200, 502, 200]
        backend.calls.clear()
        for _ in range(3):
            assert (await client.get("/api/v1/health")).status_code == 200
        assert backend.hosts() == ["auth-2", "auth-2", "auth-2"]

        # After the open window the upstream is tried again without a probe phase.
        backend.down.clear()
        clock.advance(30)
        backend.calls.clear()
        for _ in range(2):
            await client.get("/api/v1/health")
        assert sorted(backend.hosts()) == ["auth-1", "auth-2"]


@pytest.mark.asyncio
async def test_upstream_5xx_is_passed_through() -> None:
    backend = Upstreams()
    backend.status["auth-1"] = 503
    async with _gateway({"auth": ["http://auth-1"]}, backend) as client:
        response = await client.get("/api/v1/health")
    assert response.status_code == 503
    assert response.json() == {"host": "auth-1", "path": "/api/v1/health"}


@pytest.mark.asyncio
async def test_gateway_health_reports_each_group() -> None:
    backend = Upstreams()
    backend.status["academic-1"] = 500
    upstreams = {"auth": ["http://auth-1"], "academic": ["http://academic-1"]}
    async with _gateway(upstreams, backend) as client:
        response = await client.get("/api/v1/gateway/health")

    assert response.status_code == 200
    services = response.json()["data"]["services"]
    assert services["auth"] == {"up": True, "status": 200, "error": ""}
    assert services["academic"]["up"] is False
    assert services["academic"]["status"] == 500
    assert services["finance"] == {"up": False, "status": 0, "error": "no_upstream"}
