from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.persistence.repos.permissions import user_has_permission


logger = logging.getLogger(__name__)


def parse_permission(permission: str) -> tuple[str, str] | None:
    # "resource:action" with exactly one colon and both halves non-empty after trimming.
    parts = permission.split(":")
    if len(parts) != 2:
        return None
    resource, action = parts[0].strip(), parts[1].strip()
    if not resource or not action:
        return None
    return resource, action


async def allow(session: AsyncSession, *, user_id: UUID, tenant_id: str, permission: str) -> bool:
    """Return True iff the user reaches the permission through a live role in the tenant.

    Malformed permission strings deny without a query. Decisions are never
    cached; store errors propagate to the caller as internal failures.
    """
    parsed = parse_permission(permission)
    if parsed is None:
        return False
    resource, action = parsed
    allowed = await user_has_permission(
        session, user_id=user_id, tenant_id=tenant_id, resource=resource, action=action
    )
    if not allowed:
        logger.debug("authz_denied user_id=%s tenant_id=%s permission=%s", user_id, tenant_id, permission)
    return allowed
