from __future__ import annotations

import pytest

from sisfo_identity.apps.gateway.balancer import BreakerConfig, UpstreamBreaker, UpstreamGroup, build_groups
from sisfo_identity.apps.gateway.routing import known_groups, load_upstreams, match_route, parse_upstream_urls
from sisfo_identity.tests.utils.fakes import FakeClock


def test_breaker_opens_at_threshold_and_closes_after_timeout() -> None:
    clock = FakeClock()
    breaker = UpstreamBreaker("u1", BreakerConfig(failure_threshold=3, open_seconds=30), time_source=clock)

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.allow()
    breaker.record_failure()
    assert not breaker.allow()
    assert breaker.failures == 0

    clock.advance(29)
    assert not breaker.allow()
    clock.advance(1)
    assert breaker.allow()


def test_group_rotates_round_robin() -> None:
    group = UpstreamGroup("academic", ["http://a", "http://b", "http://c"])
    assert [group.pick() for _ in range(6)] == [0, 1, 2, 0, 1, 2]


def test_group_skips_open_breakers() -> None:
    clock = FakeClock()
    group = UpstreamGroup(
        "academic",
        ["http://a", "http://b"],
        BreakerConfig(failure_threshold=1, open_seconds=30),
        time_source=clock,
    )
    group.record_result(0, status_code=503)
    assert [group.pick() for _ in range(4)] == [1, 1, 1, 1]

    clock.advance(30)
    assert sorted({group.pick() for _ in range(4)}) == [0, 1]


def test_group_falls_back_to_round_robin_when_all_open() -> None:
    group = UpstreamGroup("academic", ["http://a", "http://b"], BreakerConfig(failure_threshold=1))
    group.record_result(0, status_code=None)
    group.record_result(1, status_code=500)
    assert [group.pick() for _ in range(4)] == [0, 1, 0, 1]


def test_client_errors_do_not_count_as_failures() -> None:
    group = UpstreamGroup("academic", ["http://a"], BreakerConfig(failure_threshold=1))
    group.record_result(0, status_code=404)
    group.record_result(0, status_code=499)
    assert group.breakers[0].allow()


def test_group_requires_urls() -> None:
    with pytest.raises(ValueError):
        UpstreamGroup("empty", [])
    assert build_groups({"auth": ["http://a"], "file": []}).keys() == {"auth"}


@pytest.mark.parametrize(
    ("path", "group", "protected"),
    [
        ("/api/v1/health", "auth", False),
        ("/api/v1/auth/login", "auth", False),
        ("/api/v1/schools/1", "academic", True),
        ("/api/v1/classes/", "academic", True),
        ("/api/v1/attendance/today", "attendance", True),
        ("/api/v1/reports/term", "assessment", True),
        ("/api/v1/finance/invoices", "finance", True),
        ("/api/v1/files/abc", "file", True),
    ],
)
def test_match_route(path: str, group: str, protected: bool) -> None:
    route = match_route(path)
    assert route is not None
    assert route.group == group
    assert route.protected is protected


def test_match_route_unknown_paths() -> None:
    assert match_route("/api/v1/unknown") is None
    assert match_route("/api/v1/healthz") is None
    assert match_route("/api/v1/schools") is None


def test_parse_upstream_urls_prefers_list_over_single() -> None:
    env = {
        "APP_UPSTREAM_ACADEMIC_URLS": "http://a1, http://a2,,",
        "APP_UPSTREAM_ACADEMIC_URL": "http://ignored",
        "APP_UPSTREAM_FINANCE_URL": "http://f1",
    }
    assert parse_upstream_urls("academic", env) == ["http://a1", "http://a2"]
    assert parse_upstream_urls("finance", env) == ["http://f1"]
    assert parse_upstream_urls("file", env) == []
    assert load_upstreams(env) == {"academic": ["http://a1", "http://a2"], "finance": ["http://f1"]}
    assert "notification" in known_groups()
