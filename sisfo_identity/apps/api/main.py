from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from sisfo_identity.apps.api.errors import (
    http_exception_handler,
    identity_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sisfo_identity.apps.api.middleware import install_admission_pipeline
from sisfo_identity.apps.api.response import API_PREFIX
from sisfo_identity.apps.api.routes.audit import router as audit_router
from sisfo_identity.apps.api.routes.auth import router as auth_router
from sisfo_identity.apps.api.routes.dev import router as dev_router
from sisfo_identity.apps.api.routes.health import router as health_router
from sisfo_identity.apps.api.routes.roles import router as roles_router
from sisfo_identity.apps.api.routes.users import router as users_router
from sisfo_identity.core.config import get_settings
from sisfo_identity.core.errors import IdentityError
from sisfo_identity.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    # Refuse to start with development secrets outside development.
    settings.validate_for_runtime()
    app = FastAPI(title="SISFO Identity API")

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

    app.include_router(auth_router, prefix=API_PREFIX)
    app.include_router(users_router, prefix=API_PREFIX)
    app.include_router(roles_router, prefix=API_PREFIX)
    app.include_router(audit_router, prefix=API_PREFIX)
    app.include_router(health_router, prefix=API_PREFIX)
    if settings.is_dev:
        app.include_router(dev_router, prefix=API_PREFIX)
    return app


app = create_app()
