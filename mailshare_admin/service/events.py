from __future__ import annotations

import asyncio
import contextlib
import json
import threading
from typing import Any, Dict, Optional, Protocol, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from mailshare_admin.logging import get_logger

logger = get_logger(__name__)

SESSION_UPDATE = "session_update"
AUDIT_LOG = "audit_log"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def ends_session(event: Dict[str, Any], session_id: str) -> bool:
    """True for the ``session_update`` logout event that ends ``session_id``."""
    if event.get("event") != SESSION_UPDATE:
        return False
    data = event.get("data") or {}
    return data.get("type") == "logout" and data.get("session_id") == session_id


class Subscription:
    """Bounded per-observer queue handed out by an event bus."""

    def __init__(self, bus: "InMemoryEventBus", maxsize: int) -> None:
        self._bus = bus
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False
        # Loop that consumes the queue; publishers on other loops hand off to it
        self._loop = _running_loop()

    def offer(self, event: Dict[str, Any]) -> None:
        if self.closed:
            return
        loop = self._loop
        if loop is not None and loop is not _running_loop():
            if loop.is_closed():
                return
            try:
                loop.call_soon_threadsafe(self._enqueue, event)
            except RuntimeError:
                # Consumer loop shut down between the check and the handoff
                logger.debug("event_subscription_loop_closed")
            return
        self._enqueue(event)

    def _enqueue(self, event: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # Slow observer: drop the oldest event rather than block publishers
            with contextlib.suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
            self.queue.put_nowait(event)
            self.dropped += 1

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def get_nowait(self) -> Dict[str, Any]:
        return self.queue.get_nowait()

    def drain(self) -> list[Dict[str, Any]]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


class EventBus(Protocol):
    async def publish(self, event: Dict[str, Any]) -> None: ...

    def subscribe(self) -> Subscription: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryEventBus:
    """Process-local broadcast to every subscriber, no per-subscriber filtering."""

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.max_queue_size)
        with self._lock:
            self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(sub)

    def deliver_local(self, event: Dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscribers)
        for sub in targets:
            sub.offer(event)
        return len(targets)

    async def publish(self, event: Dict[str, Any]) -> None:
        self.deliver_local(event)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            targets = list(self._subscribers)
            self._subscribers.clear()
        for sub in targets:
            sub.closed = True


class RedisEventBus:
    """Redis pub/sub fanout across server processes.

    Events are published to one channel; a relay task started from the app
    lifespan feeds channel messages into the local subscribers. Without a
    running relay, or when Redis rejects the publish, events are delivered
    locally so observers on this process still see them.
    """

    def __init__(
        self,
        redis_url: str,
        channel: str,
        *,
        socket_timeout: float = 5.0,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.channel = channel
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.local = InMemoryEventBus()
        self._relay_task: Optional[asyncio.Task] = None

    def verify_connection(self) -> None:
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def subscribe(self) -> Subscription:
        return self.local.subscribe()

    async def publish(self, event: Dict[str, Any]) -> None:
        payload = json.dumps(event, default=str)
        try:
            await self.client.publish(self.channel, payload)
        except (RedisError, OSError) as exc:
            logger.warning(
                "event_publish_redis_failed",
                channel=self.channel,
                error=str(exc),
                event_name=event.get("event"),
            )
            self.local.deliver_local(event)
            return
        if self._relay_task is None or self._relay_task.done():
            self.local.deliver_local(event)

    async def start(self) -> None:
        if self._relay_task is None or self._relay_task.done():
            self._relay_task = asyncio.create_task(self._relay())
            logger.info("event_relay_started", channel=self.channel)

    async def _relay(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = json.loads(message["data"])
                except (TypeError, json.JSONDecodeError):
                    logger.warning("event_relay_invalid_payload", channel=self.channel)
                    continue
                self.local.deliver_local(event)
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as exc:
            logger.error("event_relay_failed", channel=self.channel, error=str(exc))
        finally:
            with contextlib.suppress(RedisError, OSError):
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()

    async def close(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._relay_task
            self._relay_task = None
        await self.local.close()
        await self.client.aclose()


class SyncRedisEventBus:
    """Synchronous Redis publisher for TEST_MODE.

    Mirrors RedisEventBus without a relay task, so nothing binds to a
    per-test event loop; published events are also delivered locally.
    """

    def __init__(self, redis_url: str, channel: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.channel = channel
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.local = InMemoryEventBus()

    def verify_connection(self) -> None:
        self.client.ping()

    def subscribe(self) -> Subscription:
        return self.local.subscribe()

    async def publish(self, event: Dict[str, Any]) -> None:
        try:
            self.client.publish(self.channel, json.dumps(event, default=str))
        except (RedisError, OSError) as exc:
            logger.warning(
                "event_publish_redis_failed",
                channel=self.channel,
                error=str(exc),
                event_name=event.get("event"),
            )
        self.local.deliver_local(event)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        await self.local.close()
        self.client.close()
