from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from sisfo_identity.apps.api.errors import CODE_DEPENDENCY
from sisfo_identity.apps.api.response import error_response, success_response
from sisfo_identity.core.config import get_settings
from sisfo_identity.persistence.db import get_session
from sisfo_identity.services import kv


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _probe_db() -> None:
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


async def _probe_redis() -> None:
    client = await kv.get_redis()
    await client.ping()


async def _run_probe(name: str, probe, timeout_s: float) -> str | None:
    # Returns None when healthy, else a short error string for the details payload.
    try:
        await asyncio.wait_for(probe(), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning("health_probe_timeout dependency=%s", name)
        return "timeout"
    except (SQLAlchemyError, RedisError, OSError) as exc:
        logger.warning("health_probe_failed dependency=%s error=%s", name, type(exc).__name__)
        return str(exc) or type(exc).__name__
    return None


@router.get("/health")
async def health(request: Request):
    timeout_s = get_settings().health_timeout_s
    db_error, redis_error = await asyncio.gather(
        _run_probe("db", _probe_db, timeout_s),
        _run_probe("redis", _probe_redis, timeout_s),
    )
    status = {
        "db": "up" if db_error is None else "down",
        "redis": "up" if redis_error is None else "down",
    }
    if db_error is None and redis_error is None:
        return success_response(request=request, data=status)
    details = dict(status)
    if db_error is not None:
        details["db_error"] = db_error
    if redis_error is not None:
        details["redis_error"] = redis_error
    payload = error_response(
        request=request, code=CODE_DEPENDENCY, message="dependency unavailable", details=details
    )
    return JSONResponse(content=payload, status_code=503)
