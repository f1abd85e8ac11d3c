import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_grant, make_user
from inboxhub.api.routes.events import stream_events
from inboxhub.core.config import Settings
from inboxhub.services import notifier as notifier_module
from inboxhub.services.notifier import (
    HEARTBEAT_FRAME,
    STREAM_QUEUE_SIZE,
    NotificationRegistry,
    RedisNotificationRegistry,
    build_event,
    create_notifier,
    format_event,
    notify_channel_audience,
)


class TestNotificationRegistry:

    async def test_publish_without_streams_is_a_noop(self):
        registry = NotificationRegistry()
        assert await registry.publish(42, build_event("new_message")) == 0
        assert not registry.is_connected(42)

    async def test_event_reaches_every_stream_of_the_user(self):
        registry = NotificationRegistry()
        queues = [registry.register(1) for _ in range(3)]
        other = registry.register(2)

        event = build_event("conversation_update", {"id": 7})
        assert await registry.publish(1, event) == 3

        for queue in queues:
            assert queue.get_nowait() == event
        assert other.empty()

    async def test_unregister_prunes_empty_users(self):
        registry = NotificationRegistry()
        first = registry.register(1)
        second = registry.register(1)

        registry.unregister(1, first)
        assert registry.connection_count(1) == 1
        registry.unregister(1, second)
        assert not registry.is_connected(1)
        assert registry.user_ids == set()

        # Unknown handles and users are ignored
        registry.unregister(1, second)
        registry.unregister(99, asyncio.Queue())

    async def test_full_queue_drops_event(self):
        registry = NotificationRegistry()
        queue = registry.register(1)
        for i in range(STREAM_QUEUE_SIZE):
            registry.deliver(1, {"n": i})
        assert registry.deliver(1, {"n": "overflow"}) == 0
        assert queue.qsize() == STREAM_QUEUE_SIZE

    async def test_publish_many(self):
        registry = NotificationRegistry()
        a = registry.register(1)
        b = registry.register(2)
        await registry.publish_many([1, 2, 3], {"type": "x"})
        assert a.qsize() == 1 and b.qsize() == 1

    async def test_publish_many_skips_failing_user(self, monkeypatch):
        registry = NotificationRegistry()
        reached = registry.register(2)
        real_publish = registry.publish

        async def flaky(user_id, event):
            if user_id == 1:
                raise ConnectionError("redis down")
            return await real_publish(user_id, event)

        monkeypatch.setattr(registry, "publish", flaky)
        await registry.publish_many([1, 2], {"type": "x"})
        assert reached.get_nowait() == {"type": "x"}

    async def test_notify_channel_audience(self, db, owner, admin, channel):
        outsider = make_user(db, "outsider@example.com")
        make_grant(db, owner, admin, channel)
        registry = NotificationRegistry()
        queues = {uid: registry.register(uid) for uid in (owner.id, admin.id, outsider.id)}

        audience = await notify_channel_audience(db, registry, channel, "new_message", {"channel_id": channel.id})

        assert audience == {owner.id, admin.id}
        assert queues[owner.id].get_nowait()["type"] == "new_message"
        assert queues[admin.id].qsize() == 1
        assert queues[outsider.id].empty()


def test_format_event():
    frame = format_event({"type": "connected", "userId": 3})
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "connected", "userId": 3}


def test_create_notifier_backends():
    assert type(create_notifier(Settings(NOTIFIER_BACKEND="memory"))) is NotificationRegistry
    assert isinstance(create_notifier(Settings(NOTIFIER_BACKEND="redis")), RedisNotificationRegistry)
    with pytest.raises(ValueError):
        create_notifier(Settings(NOTIFIER_BACKEND="carrier-pigeon"))


async def test_redis_listener_delivers_locally():
    registry = RedisNotificationRegistry("redis://localhost:6379/0", "inboxhub:test")
    queue = registry.register(5)

    async def messages():
        yield {"type": "subscribe", "data": 1}
        yield {"type": "message", "data": "not json"}
        yield {"type": "message", "data": json.dumps({"user_id": 5, "event": {"type": "ping"}})}

    registry._pubsub = MagicMock()
    registry._pubsub.listen = messages
    await registry._listen()

    assert queue.get_nowait() == {"type": "ping"}
    assert queue.empty()


async def test_redis_listener_resubscribes_after_failure(monkeypatch):
    monkeypatch.setattr(notifier_module, "LISTENER_RETRY_MIN_SECONDS", 0)
    registry = RedisNotificationRegistry("redis://localhost:6379/0", "inboxhub:test")
    queue = registry.register(5)

    async def broken():
        raise ConnectionError("connection reset")
        yield

    async def messages():
        yield {"type": "message", "data": json.dumps({"user_id": 5, "event": {"type": "ping"}})}
        await asyncio.sleep(3600)

    stale = MagicMock()
    stale.listen = broken
    stale.close = AsyncMock()
    fresh = MagicMock()
    fresh.listen = messages
    fresh.subscribe = AsyncMock()
    registry._pubsub = stale
    registry._redis = MagicMock()
    registry._redis.pubsub.return_value = fresh

    task = asyncio.create_task(registry._run_listener())
    try:
        assert await asyncio.wait_for(queue.get(), timeout=1) == {"type": "ping"}
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    stale.close.assert_awaited_once()
    fresh.subscribe.assert_awaited_once_with("inboxhub:test")
    assert registry._pubsub is fresh


async def test_redis_publish_goes_through_redis():
    registry = RedisNotificationRegistry("redis://localhost:6379/0", "inboxhub:test")
    registry._redis = MagicMock()
    registry._redis.publish = AsyncMock()
    local = registry.register(5)

    await registry.publish(5, {"type": "ping"})

    channel, payload = registry._redis.publish.await_args.args
    assert channel == "inboxhub:test"
    assert json.loads(payload) == {"user_id": 5, "event": {"type": "ping"}}
    assert local.empty()


class FakeRequest:
    """Reports a disconnect after ``polls`` checks."""

    def __init__(self, polls):
        self.polls = polls

    async def is_disconnected(self):
        self.polls -= 1
        return self.polls < 0


class TestEventStream:

    async def test_connected_frame_then_events_then_cleanup(self):
        registry = NotificationRegistry()
        stream = stream_events(FakeRequest(polls=1), registry, 9, heartbeat=5)

        first = await stream.__anext__()
        assert json.loads(first[len("data: "):]) == {"type": "connected", "userId": 9}
        assert registry.connection_count(9) == 1

        await registry.publish(9, {"type": "new_message"})
        frame = await stream.__anext__()
        assert json.loads(frame[len("data: "):]) == {"type": "new_message"}

        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert not registry.is_connected(9)

    async def test_heartbeat_when_idle(self):
        registry = NotificationRegistry()
        stream = stream_events(FakeRequest(polls=1), registry, 9, heartbeat=0.01)

        await stream.__anext__()
        assert await stream.__anext__() == HEARTBEAT_FRAME
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert not registry.is_connected(9)

    async def test_closing_stream_unregisters(self):
        registry = NotificationRegistry()
        stream = stream_events(FakeRequest(polls=100), registry, 9, heartbeat=5)
        await stream.__anext__()
        await stream.aclose()
        assert registry.connection_count() == 0


def test_event_stream_requires_token(client):
    assert client.get("/api/events").status_code == 401
    assert client.get("/api/events?token=forged").status_code == 401
