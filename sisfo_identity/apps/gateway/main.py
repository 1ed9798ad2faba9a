from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from sisfo_identity.apps.api.deps import parse_bearer_token
from sisfo_identity.apps.api.errors import (
    CODE_DEPENDENCY,
    CODE_INTERNAL,
    CODE_NOT_FOUND,
    CODE_UNAUTHORIZED,
    api_error,
    http_exception_handler,
    identity_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sisfo_identity.apps.api.middleware import install_admission_pipeline
from sisfo_identity.apps.api.response import success_response
from sisfo_identity.apps.gateway.balancer import BreakerConfig, UpstreamGroup, build_groups
from sisfo_identity.apps.gateway.proxy import UpstreamProxy, build_target_url
from sisfo_identity.apps.gateway.routing import known_groups, load_upstreams, match_route
from sisfo_identity.core.config import get_settings
from sisfo_identity.core.errors import IdentityError
from sisfo_identity.core.logging import configure_logging
from sisfo_identity.services.auth.tokens import TokenCodec, TokenError


logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
HEALTH_PATH = "api/v1/health"


async def _probe(client: httpx.AsyncClient, base_url: str, timeout_s: float) -> tuple[int, str]:
    try:
        response = await client.get(build_target_url(base_url, HEALTH_PATH), timeout=timeout_s)
    except httpx.HTTPError as exc:
        return 0, str(exc) or type(exc).__name__
    return response.status_code, ""


async def probe_group(client: httpx.AsyncClient, group: UpstreamGroup | None, timeout_s: float) -> dict[str, Any]:
    # A group is up when at least one of its upstreams answers 200.
    if group is None:
        return {"up": False, "status": 0, "error": "no_upstream"}
    results = await asyncio.gather(*(_probe(client, url, timeout_s) for url in group.urls))
    for status_code, _ in results:
        if status_code == 200:
            return {"up": True, "status": 200, "error": ""}
    status_code, error = results[-1]
    return {"up": False, "status": status_code, "error": error}


def create_app(
    upstreams: dict[str, list[str]] | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    time_source: Callable[[], float] | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()
    settings.validate_for_runtime()
    groups = build_groups(
        load_upstreams() if upstreams is None else upstreams,
        BreakerConfig(
            failure_threshold=settings.gateway_breaker_threshold,
            open_seconds=settings.gateway_breaker_open_seconds,
        ),
        time_source=time_source,
    )
    client = httpx.AsyncClient(transport=transport, timeout=settings.gateway_proxy_timeout_s)
    proxy = UpstreamProxy(client)
    codec = TokenCodec(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("gateway_started groups=%s", ",".join(sorted(groups)) or "-")
        yield
        await client.aclose()

    app = FastAPI(title="SISFO Gateway", lifespan=lifespan)
    app.state.upstream_groups = groups

    install_admission_pipeline(app)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(IdentityError)
    async def _identity_error_handler(request: Request, exc: IdentityError):
        return await identity_error_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.get("/api/v1/gateway/health")
    async def gateway_health(request: Request) -> dict:
        names = known_groups()
        reports = await asyncio.gather(
            *(probe_group(client, groups.get(name), settings.health_timeout_s) for name in names)
        )
        return success_response(request=request, data={"services": dict(zip(names, reports))})

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_route(path: str, request: Request) -> Response:
        route = match_route(request.url.path)
        if route is None:
            raise api_error(404, "Not Found", code=CODE_NOT_FOUND)
        if route.protected:
            token = parse_bearer_token(request.headers.get("Authorization"))
            try:
                codec.verify_access(token)
            except TokenError as exc:
                logger.info("gateway_token_rejected path=%s reason=%s", request.url.path, exc.reason)
                raise api_error(401, "Unauthorized", code=CODE_UNAUTHORIZED) from exc
        group = groups.get(route.group)
        if group is None:
            raise api_error(503, "Service unavailable", code=CODE_INTERNAL)
        index = group.pick()
        try:
            upstream = await proxy.forward(request, group.urls[index])
        except httpx.HTTPError as exc:
            group.record_result(index, status_code=None)
            logger.warning(
                "gateway_upstream_failed group=%s upstream=%s error=%s",
                group.name,
                group.urls[index],
                type(exc).__name__,
            )
            raise api_error(502, "Bad Gateway", code=CODE_DEPENDENCY) from exc
        group.record_result(index, status_code=upstream.status_code)
        return UpstreamProxy.to_response(upstream)

    return app
