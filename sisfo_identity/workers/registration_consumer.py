from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sisfo_identity.core.config import get_settings
from sisfo_identity.core.errors import IdentityError
from sisfo_identity.persistence.db import SessionLocal
from sisfo_identity.services import identity_admin
from sisfo_identity.services.auth.passwords import generate_initial_password
from sisfo_identity.services.events import STUDENT_REGISTERED, EventBus, get_event_bus


logger = logging.getLogger(__name__)

STUDENT_ROLE = "student"
RECONNECT_DELAY_S = 5.0


def parse_registration(body: bytes | str) -> dict[str, Any] | None:
    # Malformed payloads are dropped; redelivery would fail the same way.
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    tenant_id = payload.get("tenant_id")
    email = payload.get("email")
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        return None
    if not isinstance(email, str) or "@" not in email:
        return None
    return payload


async def handle_student_registration(body: bytes | str, session: AsyncSession) -> bool:
    """Provision a student account; returns False when the message is dropped."""
    payload = parse_registration(body)
    if payload is None:
        logger.warning("student_registration_dropped reason=malformed")
        return False
    tenant_id = payload["tenant_id"].strip()
    try:
        user = await identity_admin.register_user(
            session,
            tenant_id=tenant_id,
            email=payload["email"],
            password=generate_initial_password(),
        )
        await identity_admin.assign_role_by_name(
            session, tenant_id=tenant_id, user_id=user.id, role_name=STUDENT_ROLE
        )
        await session.commit()
    except IdentityError as exc:
        # Duplicates and invalid emails are not retried.
        await session.rollback()
        logger.warning(
            "student_registration_dropped tenant_id=%s reason=%s",
            tenant_id,
            type(exc).__name__,
        )
        return False
    logger.info(
        "student_provisioned tenant_id=%s user_id=%s application_id=%s",
        tenant_id,
        user.id,
        payload.get("application_id"),
    )
    return True


def consumer_name() -> str:
    # Must survive restarts so the consumer replays its own pending entries.
    return get_settings().events_consumer_name or socket.gethostname()


async def consume(bus: EventBus, *, group: str | None = None, consumer: str | None = None) -> None:
    group = group or get_settings().events_consumer_group
    consumer = consumer or consumer_name()
    async for message_id, body in bus.subscribe(STUDENT_REGISTERED, group=group, consumer=consumer):
        try:
            async with SessionLocal() as session:
                await handle_student_registration(body, session)
        except SQLAlchemyError:
            # Left pending; replayed when this consumer restarts.
            logger.exception("student_registration_failed message_id=%s", message_id)
            continue
        await bus.ack(STUDENT_REGISTERED, group, message_id)


async def consume_forever() -> None:
    # Resubscribe after broker outages; entries published meanwhile wait in the stream.
    while True:
        try:
            await consume(await get_event_bus())
        except (RedisError, OSError):
            logger.exception("student_registration_subscription_lost")
        await asyncio.sleep(RECONNECT_DELAY_S)


if __name__ == "__main__":
    from sisfo_identity.core.logging import configure_logging

    configure_logging()
    asyncio.run(consume_forever())
