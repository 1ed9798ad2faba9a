from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sisfo_identity.apps.api.response import error_response
from sisfo_identity.core.errors import (
    ConfigError,
    ConflictError,
    DependencyUnavailableError,
    ForbiddenError,
    IdentityError,
    InvalidInputError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
)


logger = logging.getLogger(__name__)

CODE_INTERNAL = "1001"
CODE_UNAUTHORIZED = "2001"
CODE_FORBIDDEN = "3001"
CODE_INVALID_INPUT = "4001"
CODE_CONFLICT = "5001"
CODE_NOT_FOUND = "5002"
CODE_RATE_LIMITED = "6001"
CODE_DEPENDENCY = "6002"

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: CODE_INVALID_INPUT,
    401: CODE_UNAUTHORIZED,
    403: CODE_FORBIDDEN,
    404: CODE_NOT_FOUND,
    405: CODE_INVALID_INPUT,
    409: CODE_CONFLICT,
    422: CODE_INVALID_INPUT,
    429: CODE_RATE_LIMITED,
    500: CODE_INTERNAL,
    502: CODE_DEPENDENCY,
    503: CODE_DEPENDENCY,
}

# Domain error kind -> (HTTP status, stable code).
_DOMAIN_ERRORS: list[tuple[type[IdentityError], int, str]] = [
    (InvalidInputError, status.HTTP_400_BAD_REQUEST, CODE_INVALID_INPUT),
    (UnauthorizedError, status.HTTP_401_UNAUTHORIZED, CODE_UNAUTHORIZED),
    (ForbiddenError, status.HTTP_403_FORBIDDEN, CODE_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND, CODE_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT, CODE_CONFLICT),
    (RateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS, CODE_RATE_LIMITED),
    (DependencyUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE, CODE_DEPENDENCY),
    (ConfigError, status.HTTP_500_INTERNAL_SERVER_ERROR, CODE_INTERNAL),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, CODE_INTERNAL)


def api_error(status_code: int, message: str, *, code: str | None = None, **details: Any) -> HTTPException:
    # Build an HTTPException whose detail carries the stable code for the envelope.
    detail: dict[str, Any] = {"code": code or _default_code(status_code), "message": message}
    detail.update(details)
    return HTTPException(status_code=status_code, detail=detail)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Invalid bodies and query params are client input errors (400), not 422.
    payload = error_response(
        request=request,
        code=CODE_INVALID_INPUT,
        message="Invalid Input",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=status.HTTP_400_BAD_REQUEST)


def domain_error_status(exc: IdentityError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, CODE_INTERNAL


async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    headers = None
    if isinstance(exc, UnauthorizedError):
        # Authentication failures stay coarse; the specific reason lives in the audit log.
        message, details = "Unauthorized", None
        headers = {"WWW-Authenticate": "Bearer"}
    elif status_code >= 500:
        message, details = exc.message, None
    else:
        message, details = exc.message, exc.details
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code=CODE_INTERNAL, message="Internal Server Error")
    return JSONResponse(content=payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
