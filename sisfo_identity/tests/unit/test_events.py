from __future__ import annotations

import json

import pytest

from sisfo_identity.services.events import PASSWORD_RESET_REQUESTED, EventBus


def _bus(fake_redis) -> EventBus:
    return EventBus(fake_redis, stream_prefix="sisfo.events", block_ms=1)


def test_stream_names_use_prefix() -> None:
    bus = EventBus(object(), stream_prefix="sisfo.events:", maxlen=10, block_ms=1)
    assert bus.stream(" auth.password_reset.requested ") == "sisfo.events:auth.password_reset.requested"
    with pytest.raises(ValueError):
        bus.stream("  ")


@pytest.mark.asyncio
async def test_entries_published_without_consumers_are_kept(fake_redis) -> None:
    bus = _bus(fake_redis)
    await bus.publish(PASSWORD_RESET_REQUESTED, {"email": "lupa@school.test"})

    messages = bus.subscribe(PASSWORD_RESET_REQUESTED, group="notifications", consumer="mailer-1")
    message_id, body = await anext(messages)
    await messages.aclose()

    stream = bus.stream(PASSWORD_RESET_REQUESTED)
    assert json.loads(body) == {"email": "lupa@school.test"}
    assert fake_redis.pending(stream, "notifications") == [message_id]
    assert await bus.ack(PASSWORD_RESET_REQUESTED, "notifications", message_id) == 1
    assert fake_redis.pending(stream, "notifications") == []


@pytest.mark.asyncio
async def test_unacknowledged_entries_are_replayed_to_same_consumer(fake_redis) -> None:
    bus = _bus(fake_redis)
    await bus.publish(PASSWORD_RESET_REQUESTED, {"n": 1})
    await bus.publish(PASSWORD_RESET_REQUESTED, {"n": 2})

    first_run = bus.subscribe(PASSWORD_RESET_REQUESTED, group="notifications", consumer="mailer-1")
    first_id, _ = await anext(first_run)
    await first_run.aclose()

    second_run = bus.subscribe(PASSWORD_RESET_REQUESTED, group="notifications", consumer="mailer-1")
    replayed_id, replayed = await anext(second_run)
    await second_run.aclose()

    assert replayed_id == first_id
    assert json.loads(replayed) == {"n": 1}


@pytest.mark.asyncio
async def test_ensure_group_is_idempotent(fake_redis) -> None:
    bus = _bus(fake_redis)
    await bus.ensure_group(PASSWORD_RESET_REQUESTED, "notifications")
    await bus.ensure_group(PASSWORD_RESET_REQUESTED, "notifications")
    assert fake_redis.pending(bus.stream(PASSWORD_RESET_REQUESTED), "notifications") == []
