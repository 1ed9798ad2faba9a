from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.apps.api.deps import get_db, require_permission
from sisfo_identity.apps.api.response import success_response
from sisfo_identity.core.errors import InvalidInputError
from sisfo_identity.domain.models import AuditLog
from sisfo_identity.persistence.repos import audit as audit_repo
from sisfo_identity.services.auth.tokens import AccessClaims


router = APIRouter(prefix="/audit-logs", tags=["audit"])

EXPORT_COLUMNS = ("id", "tenant_id", "user_id", "action", "resource_type", "resource_id", "created_at")
EXPORT_MAX_ROWS = 10_000


class AuditLogResponse(BaseModel):
    id: str
    tenant_id: str
    user_id: str | None
    action: str
    resource_type: str
    resource_id: str | None
    new_values: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    request_id: str | None
    created_at: str


def _to_response(entry: AuditLog) -> AuditLogResponse:
    return AuditLogResponse(
        id=str(entry.id),
        tenant_id=entry.tenant_id,
        user_id=str(entry.user_id) if entry.user_id else None,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=str(entry.resource_id) if entry.resource_id else None,
        new_values=entry.new_values,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        request_id=entry.request_id,
        created_at=entry.created_at.isoformat(),
    )


def parse_timestamp(value: str | None, field: str) -> datetime | None:
    # RFC3339 bounds; naive values are read as UTC.
    if value is None or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidInputError("invalid timestamp", details={"field": field}) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_uuid(value: str | None, field: str) -> UUID | None:
    if value is None or not value.strip():
        return None
    try:
        return UUID(value.strip())
    except ValueError as exc:
        raise InvalidInputError("invalid identifier", details={"field": field}) from exc


def build_filter(
    *,
    user_id: str | None,
    action: str | None,
    resource_type: str | None,
    resource_id: str | None,
    start: str | None,
    end: str | None,
) -> audit_repo.AuditFilter:
    start_at = parse_timestamp(start, "start")
    end_at = parse_timestamp(end, "end")
    if start_at and end_at and start_at > end_at:
        raise InvalidInputError("start must not be after end", details={"field": "start"})
    return audit_repo.AuditFilter(
        user_id=parse_uuid(user_id, "user_id"),
        action=action or None,
        resource_type=resource_type or None,
        resource_id=parse_uuid(resource_id, "resource_id"),
        start=start_at,
        end=end_at,
    )


@router.get("")
async def list_audit_logs(
    request: Request,
    user_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    start: str | None = None,
    end: str | None = None,
    limit: int | None = Query(default=None),
    offset: int | None = Query(default=None),
    claims: AccessClaims = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Tenant scope always comes from the token, never from the query.
    filters = build_filter(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        start=start,
        end=end,
    )
    limit, offset = audit_repo.clamp_page(limit, offset)
    items, total = await audit_repo.list_logs(
        db, tenant_id=claims.tenant_id, filters=filters, limit=limit, offset=offset
    )
    return success_response(
        request=request,
        data={
            "items": [_to_response(item).model_dump() for item in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    )


@router.get("/search")
async def search_audit_logs(
    request: Request,
    q: str | None = None,
    limit: int | None = Query(default=None),
    offset: int | None = Query(default=None),
    claims: AccessClaims = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if q is None or not q.strip():
        raise InvalidInputError("query parameter q is required", details={"field": "q"})
    limit, offset = audit_repo.clamp_page(limit, offset)
    items, total = await audit_repo.search_logs(
        db, tenant_id=claims.tenant_id, query=q, limit=limit, offset=offset
    )
    return success_response(
        request=request,
        data={
            "items": [_to_response(item).model_dump() for item in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    )


def render_csv(entries: list[AuditLog]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for entry in entries:
        writer.writerow(
            [
                str(entry.id),
                entry.tenant_id,
                str(entry.user_id) if entry.user_id else "",
                entry.action,
                entry.resource_type,
                str(entry.resource_id) if entry.resource_id else "",
                entry.created_at.isoformat(),
            ]
        )
    return buffer.getvalue()


@router.get("/export")
async def export_audit_logs(
    user_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    start: str | None = None,
    end: str | None = None,
    claims: AccessClaims = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    filters = build_filter(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        start=start,
        end=end,
    )
    entries: list[AuditLog] = []
    offset = 0
    # Page through with the repo's maximum page size up to a fixed export cap.
    while len(entries) < EXPORT_MAX_ROWS:
        page, _ = await audit_repo.list_logs(
            db, tenant_id=claims.tenant_id, filters=filters, limit=audit_repo.MAX_LIMIT, offset=offset
        )
        entries.extend(page)
        if len(page) < audit_repo.MAX_LIMIT:
            break
        offset += len(page)
    body = render_csv(entries[:EXPORT_MAX_ROWS])
    return StreamingResponse(
        iter([body]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="audit_logs.csv"'},
    )
