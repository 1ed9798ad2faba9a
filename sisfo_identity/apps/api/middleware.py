"""Admission pipeline shared by the identity API and the gateway.

Steps run in a fixed order: recover, request-id, logging, rate limit, CORS,
security headers. Authentication and authorization follow as route
dependencies. Rate limiting sits ahead of authentication so floods are shed
before any token work, and CORS sits ahead of authentication so preflights
never need credentials.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import Response

from sisfo_identity.apps.api.errors import http_exception_handler, unhandled_exception_handler
from sisfo_identity.apps.api.rate_limit import enforce_rate_limit
from sisfo_identity.apps.api.response import REQUEST_ID_HEADER, get_request_id
from sisfo_identity.core.config import get_settings
from sisfo_identity.services.audit import schedule_audit


logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

CORS_ALLOW_METHODS = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
CORS_ALLOW_HEADERS = "Authorization, Content-Type, X-Request-ID"

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "X-XSS-Protection": "0",
}


def origin_allowed(origin: str, allowed: list[str]) -> bool:
    # Supports "*", exact origins and "*.suffix" wildcard hosts.
    for pattern in allowed:
        if pattern == "*" or pattern == origin:
            return True
        if pattern.startswith("*."):
            suffix = pattern[1:]
            host = origin.split("://", 1)[-1]
            if host.endswith(suffix) and len(host) > len(suffix):
                return True
    return False


async def recover_middleware(request: Request, call_next: CallNext) -> Response:
    # Last line of defence: any escaped exception becomes a 500 envelope.
    try:
        return await call_next(request)
    except Exception as exc:  # noqa: BLE001 - converted to a stable internal error response
        response = await unhandled_exception_handler(request, exc)
        response.headers[REQUEST_ID_HEADER] = get_request_id(request)
        return response


async def request_id_middleware(request: Request, call_next: CallNext) -> Response:
    # Preserve incoming request IDs or assign a new one for traceability.
    request_id = get_request_id(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def logging_middleware(request: Request, call_next: CallNext) -> Response:
    start = time.monotonic()
    response = await call_next(request)
    latency_ms = (time.monotonic() - start) * 1000.0
    logger.info(
        "http_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
        get_request_id(request),
    )
    claims = getattr(request.state, "claims", None)
    if claims is not None:
        # Trace authenticated requests without delaying the response.
        schedule_audit(
            tenant_id=claims.tenant_id,
            user_id=claims.user_id,
            action="http.request",
            resource_type="http",
            new_values={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round(latency_ms, 1),
            },
            request=request,
        )
    return response


async def rate_limit_middleware(request: Request, call_next: CallNext) -> Response:
    try:
        await enforce_rate_limit(request)
    except HTTPException as exc:
        return await http_exception_handler(request, exc)
    return await call_next(request)


async def cors_middleware(request: Request, call_next: CallNext) -> Response:
    origin = request.headers.get("origin")
    allowed = bool(origin) and origin_allowed(origin, get_settings().cors_origins())
    if request.method == "OPTIONS":
        response: Response = Response(status_code=204)
    else:
        response = await call_next(request)
    if allowed:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
        response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
        response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Vary"] = "Origin"
    return response


async def security_headers_middleware(request: Request, call_next: CallNext) -> Response:
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.scheme == "https" or request.headers.get("X-Forwarded-Proto") == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def install_admission_pipeline(app: FastAPI) -> None:
    """Register the pipeline; Starlette runs the last-registered middleware first."""
    for middleware in (
        security_headers_middleware,
        cors_middleware,
        rate_limit_middleware,
        logging_middleware,
        request_id_middleware,
        recover_middleware,
    ):
        app.middleware("http")(middleware)

