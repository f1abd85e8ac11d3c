"""
Notification Registry - real-time fan-out to open SSE streams.

Each open stream registers an ``asyncio.Queue`` under its user id; publishing
an event puts it on every queue of that user. Delivery is at-most-once: if a
user has no open stream at publish time the event is dropped.

All mutation happens on the event loop thread, so no lock is taken.

``RedisNotificationRegistry`` keeps the same local map but routes every
publish through a Redis pub/sub channel, so an event published on one
instance reaches streams held by any instance.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set

import redis.asyncio as redis
from fastapi import Request

from inboxhub.core.config import Settings
from inboxhub.services.access_resolver import AccessResolver

logger = logging.getLogger(__name__)

# Per-stream buffer. A stream that falls this far behind loses new events.
STREAM_QUEUE_SIZE = 100

HEARTBEAT_FRAME = ": ping\n\n"

# Redis listener reconnect backoff
LISTENER_RETRY_MIN_SECONDS = 1.0
LISTENER_RETRY_MAX_SECONDS = 30.0


def build_event(event_type: str, data: Any = None) -> Dict[str, Any]:
    return {
        "type": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }


def format_event(event: Dict[str, Any]) -> str:
    """Serialize one event as an SSE ``data:`` frame."""
    return f"data: {json.dumps(event, default=str)}\n\n"


class NotificationRegistry:
    """In-process map of user id -> set of open stream queues."""

    def __init__(self):
        self._streams: Dict[int, Set[asyncio.Queue]] = {}

    async def start(self):
        pass

    async def stop(self):
        self.close()

    def register(self, user_id: int, handle: Optional[asyncio.Queue] = None) -> asyncio.Queue:
        if handle is None:
            handle = asyncio.Queue(maxsize=STREAM_QUEUE_SIZE)
        self._streams.setdefault(user_id, set()).add(handle)
        logger.info(
            f"[SSE] Stream opened for user {user_id} "
            f"({len(self._streams[user_id])} open)"
        )
        return handle

    def unregister(self, user_id: int, handle: asyncio.Queue) -> None:
        handles = self._streams.get(user_id)
        if not handles:
            return
        handles.discard(handle)
        if not handles:
            del self._streams[user_id]
        logger.info(f"[SSE] Stream closed for user {user_id}")

    def deliver(self, user_id: int, event: Dict[str, Any]) -> int:
        """Put ``event`` on every local queue of ``user_id``. Returns the number of queues reached."""
        handles = self._streams.get(user_id)
        if not handles:
            return 0

        delivered = 0
        for handle in list(handles):
            try:
                handle.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"[SSE] Stream queue full for user {user_id}, event dropped")
        return delivered

    async def publish(self, user_id: int, event: Dict[str, Any]) -> int:
        return self.deliver(user_id, event)

    async def publish_many(self, user_ids: Iterable[int], event: Dict[str, Any]) -> None:
        """Publish to each user. A failed publish is logged and skipped, never raised."""
        for user_id in user_ids:
            try:
                await self.publish(user_id, event)
            except Exception as e:
                logger.error(f"[SSE] Failed to publish {event.get('type')} to user {user_id}: {e}")

    def is_connected(self, user_id: int) -> bool:
        return user_id in self._streams

    def connection_count(self, user_id: Optional[int] = None) -> int:
        if user_id is not None:
            return len(self._streams.get(user_id, ()))
        return sum(len(handles) for handles in self._streams.values())

    @property
    def user_ids(self) -> Set[int]:
        return set(self._streams)

    def close(self) -> None:
        self._streams.clear()


class RedisNotificationRegistry(NotificationRegistry):
    """Registry whose publishes travel through Redis pub/sub."""

    def __init__(self, redis_url: str, channel: str):
        super().__init__()
        self.redis_url = redis_url
        self.channel = channel
        self._redis: Optional[redis.Redis] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self):
        self._redis = redis.from_url(self.redis_url, decode_responses=True)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._run_listener())
        logger.info(f"[SSE] Notifier subscribed to Redis channel {self.channel}")

    async def stop(self):
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.close()
        if self._redis:
            await self._redis.close()
        self.close()

    async def publish(self, user_id: int, event: Dict[str, Any]) -> int:
        if self._redis is None:
            return self.deliver(user_id, event)
        payload = json.dumps({"user_id": user_id, "event": event}, default=str)
        await self._redis.publish(self.channel, payload)
        return 0

    async def _listen(self):
        """Fan Redis messages out to local streams until the subscription fails."""
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                    self.deliver(int(payload["user_id"]), payload["event"])
                except (ValueError, KeyError, TypeError) as e:
                    logger.error(f"[SSE] Discarding malformed notifier payload: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[SSE] Redis listener stopped: {e}")

    async def _resubscribe(self):
        if self._pubsub is not None:
            try:
                await self._pubsub.close()
            except Exception as e:
                logger.debug(f"[SSE] Closing broken Redis subscription failed: {e}")
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _run_listener(self):
        """Background task: listen, and resubscribe with capped backoff whenever the listener stops."""
        delay = LISTENER_RETRY_MIN_SECONDS
        while True:
            await self._listen()
            logger.warning(f"[SSE] Resubscribing to Redis channel {self.channel} in {delay:.1f}s")
            await asyncio.sleep(delay)
            try:
                await self._resubscribe()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[SSE] Redis resubscribe failed: {e}")
                delay = min(delay * 2, LISTENER_RETRY_MAX_SECONDS)
                continue
            delay = LISTENER_RETRY_MIN_SECONDS
            logger.info(f"[SSE] Notifier resubscribed to Redis channel {self.channel}")


def create_notifier(settings: Settings) -> NotificationRegistry:
    backend = settings.NOTIFIER_BACKEND.lower()
    if backend == "redis":
        return RedisNotificationRegistry(settings.REDIS_URL, settings.NOTIFIER_REDIS_CHANNEL)
    if backend != "memory":
        raise ValueError(f"Unknown NOTIFIER_BACKEND: {settings.NOTIFIER_BACKEND}")
    return NotificationRegistry()


async def notify_channel_audience(db, notifier: NotificationRegistry, channel, event_type: str, data: Any) -> Set[int]:
    """Publish one event to the owner and every admin whose active grant reaches ``channel``."""
    audience = AccessResolver.channel_audience(db, channel)
    await notifier.publish_many(audience, build_event(event_type, data))
    return audience


def get_notifier(request: Request) -> NotificationRegistry:
    """FastAPI dependency: the registry built by the application lifespan."""
    return request.app.state.notifier
