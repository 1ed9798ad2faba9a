"""Redis Streams event bus for cross-service domain events.

Each routing key maps onto the stream ``<prefix>:<routing_key>``. Entries
persist until trimmed, so consumers that were down read them on return.
Consumers read through a consumer group and acknowledge after handling;
unacknowledged entries are replayed the next time the same consumer starts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping

from redis.asyncio import Redis
from redis.exceptions import ResponseError

from sisfo_identity.core.config import get_settings


logger = logging.getLogger(__name__)

PASSWORD_RESET_REQUESTED = "auth.password_reset.requested"
STUDENT_REGISTERED = "admission.student.registered"

_BODY_FIELD = "body"
_ROUTING_KEY_FIELD = "routing_key"

_bus_client: Redis | None = None
_bus_loop: asyncio.AbstractEventLoop | None = None


class EventBus:
    def __init__(
        self,
        client: Redis,
        *,
        stream_prefix: str | None = None,
        maxlen: int | None = None,
        block_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._prefix = (stream_prefix or settings.events_stream_prefix).rstrip(":")
        self._maxlen = maxlen if maxlen is not None else settings.events_stream_maxlen
        self._block_ms = block_ms if block_ms is not None else settings.events_block_ms

    def stream(self, routing_key: str) -> str:
        routing_key = routing_key.strip()
        if not routing_key:
            raise ValueError("routing key must be provided")
        return f"{self._prefix}:{routing_key}" if self._prefix else routing_key

    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> str:
        # XADD persists the entry whether or not a consumer is connected.
        stream = self.stream(routing_key)
        message_id = await self._client.xadd(
            stream,
            {_ROUTING_KEY_FIELD: routing_key, _BODY_FIELD: json.dumps(dict(payload), default=str)},
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug("event_published stream=%s message_id=%s", stream, message_id)
        return message_id

    async def ensure_group(self, routing_key: str, group: str) -> None:
        # Start new groups at the beginning so entries published before first start are consumed.
        stream = self.stream(routing_key)
        try:
            await self._client.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info("event_group_created stream=%s group=%s", stream, group)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def subscribe(
        self, routing_key: str, *, group: str, consumer: str, count: int = 10
    ) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(message_id, body)`` pairs; callers must ``ack`` each handled id.

        The consumer's own pending entries are replayed first, then new
        entries are read with a blocking XREADGROUP.
        """
        stream = self.stream(routing_key)
        await self.ensure_group(routing_key, group)
        logger.info("event_subscribed stream=%s group=%s consumer=%s", stream, group, consumer)
        cursor = "0"
        while True:
            response = await self._client.xreadgroup(
                group, consumer, {stream: cursor}, count=count, block=self._block_ms
            )
            entries = response[0][1] if response else []
            if cursor != ">":
                if not entries:
                    cursor = ">"
                    continue
                cursor = entries[-1][0]
            for message_id, fields in entries:
                yield message_id, (fields or {}).get(_BODY_FIELD, "")

    async def ack(self, routing_key: str, group: str, *message_ids: str) -> int:
        if not message_ids:
            return 0
        return int(await self._client.xack(self.stream(routing_key), group, *message_ids))


async def get_event_bus() -> EventBus:
    # Reuse one broker client per event loop.
    global _bus_client, _bus_loop
    current_loop = asyncio.get_running_loop()
    if _bus_client is None or _bus_loop not in (current_loop, None):
        _bus_client = Redis.from_url(get_settings().events_url, encoding="utf-8", decode_responses=True)
        _bus_loop = current_loop
    return EventBus(_bus_client)


def set_event_bus_client(client: Redis) -> None:
    global _bus_client, _bus_loop
    _bus_client = client
    try:
        _bus_loop = asyncio.get_running_loop()
    except RuntimeError:
        _bus_loop = None


def reset_event_bus_state() -> None:
    global _bus_client, _bus_loop
    _bus_client = None
    _bus_loop = None


def password_reset_payload(*, tenant_id: str, user_id: str, email: str, token: str) -> dict[str, Any]:
    # Plaintext token travels only on the internal broker for delivery by notifications.
    return {
        "tenant_id": tenant_id,
        "user_id": user_id,
        "email": email,
        "token": token,
        "type": "password_reset",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
