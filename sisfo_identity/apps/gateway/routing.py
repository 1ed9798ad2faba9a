from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


UPSTREAM_ENV_PREFIX = "APP_UPSTREAM_"


@dataclass(frozen=True)
class Route:
    prefix: str
    group: str
    protected: bool


# Order matters: the first matching prefix wins.
ROUTES: tuple[Route, ...] = (
    Route("/api/v1/health", "auth", False),
    Route("/api/v1/auth/", "auth", False),
    Route("/api/v1/schools/", "academic", True),
    Route("/api/v1/classes/", "academic", True),
    Route("/api/v1/subjects/", "academic", True),
    Route("/api/v1/attendance/", "attendance", True),
    Route("/api/v1/grades/", "assessment", True),
    Route("/api/v1/reports/", "assessment", True),
    Route("/api/v1/admissions/", "admission", True),
    Route("/api/v1/finance/", "finance", True),
    Route("/api/v1/notifications/", "notification", True),
    Route("/api/v1/files/", "file", True),
)


def known_groups(routes: tuple[Route, ...] = ROUTES) -> list[str]:
    # Preserve first-seen order so health output is stable.
    seen: list[str] = []
    for route in routes:
        if route.group not in seen:
            seen.append(route.group)
    return seen


def match_route(path: str, routes: tuple[Route, ...] = ROUTES) -> Route | None:
    for route in routes:
        if route.prefix.endswith("/"):
            if path.startswith(route.prefix):
                return route
        elif path == route.prefix or path.startswith(route.prefix + "/"):
            return route
    return None


def parse_upstream_urls(name: str, environ: Mapping[str, str] | None = None) -> list[str]:
    """Read ``APP_UPSTREAM_<NAME>_URLS`` (comma separated) or fall back to ``_URL``."""
    environ = os.environ if environ is None else environ
    key = f"{UPSTREAM_ENV_PREFIX}{name.upper()}"
    raw = environ.get(f"{key}_URLS", "").strip()
    if raw:
        return [part.strip() for part in raw.split(",") if part.strip()]
    single = environ.get(f"{key}_URL", "").strip()
    return [single] if single else []


def load_upstreams(environ: Mapping[str, str] | None = None) -> dict[str, list[str]]:
    # Groups without any configured URL are left out; routes to them answer 503.
    upstreams: dict[str, list[str]] = {}
    for group in known_groups():
        urls = parse_upstream_urls(group, environ)
        if urls:
            upstreams[group] = urls
    return upstreams
