from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from sisfo_identity.domain.models import AuditLog
from sisfo_identity.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "hash"]
_REDACTED_VALUE = "[REDACTED]"

# Background audit writes are tracked so they are not garbage-collected mid-flight.
_pending_tasks: set[asyncio.Task[None]] = set()


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_values(value: Any) -> Any:
    # Recursively scrub credential-bearing fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_values(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_values(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return {
        "request_id": request_id,
        "ip_address": ip_address,
        "user_agent": request.headers.get("user-agent"),
    }


def _build_log(
    *,
    tenant_id: str | None,
    user_id: UUID | None,
    action: str,
    resource_type: str,
    resource_id: UUID | None,
    new_values: dict[str, Any] | None,
    request: Request | None,
) -> AuditLog:
    ctx = get_request_context(request)
    return AuditLog(
        tenant_id=tenant_id or "",
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        new_values=sanitize_values(new_values or {}),
        ip_address=ctx["ip_address"],
        user_agent=ctx["user_agent"],
        request_id=ctx["request_id"],
    )


async def record_audit(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    user_id: UUID | None,
    action: str,
    resource_type: str,
    resource_id: UUID | None = None,
    new_values: dict[str, Any] | None = None,
    request: Request | None = None,
    commit: bool = True,
    best_effort: bool = True,
) -> None:
    """Append one audit row.

    Security transitions call this inline so the row lands before the response.
    With ``best_effort`` a storage failure is logged instead of raised.
    """
    entry = _build_log(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        new_values=new_values,
        request=request,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _report_failure(action, entry.request_id, exc, best_effort)
        return

    try:
        session.add(entry)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        _report_failure(action, entry.request_id, exc, best_effort)


def _report_failure(action: str, request_id: str | None, exc: Exception, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level("audit_write_failed action=%s request_id=%s", action, request_id, exc_info=exc)
    if not best_effort:
        raise exc


def schedule_audit(**kwargs: Any) -> asyncio.Task[None]:
    # Fire-and-forget write on a dedicated session; never blocks the response.
    kwargs.pop("session", None)
    task = asyncio.create_task(record_audit(session=None, best_effort=True, **kwargs))
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


async def drain_pending_audits() -> None:
    # Await in-flight background writes (shutdown hooks and tests).
    if _pending_tasks:
        await asyncio.gather(*list(_pending_tasks), return_exceptions=True)
