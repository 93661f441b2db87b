"""
Progress Publisher
Fan-out of typed progress events to subscribers keyed by upload id.

Delivery is best-effort and at-most-once: nothing is stored or replayed, so
a subscriber that connects late must read the upload record for ground truth.
"""

import asyncio
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

import redis
import redis.asyncio as aioredis

from ..models.events import EventType, ProgressEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[ProgressEvent], None]


class ProgressPublisher(ABC):
    """Stage-facing handle for emitting progress events."""

    def publish(
        self, upload_id: str, event_type: Union[EventType, str], data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Publish one event. Never raises; a failed publish is logged and dropped.

        Args:
            upload_id: Upload the event belongs to
            event_type: file_progress, chunk_progress, processing_progress or error
            data: Stage-specific payload
        """
        event = ProgressEvent(type=EventType(event_type), upload_id=upload_id, data=data or {})
        try:
            self._deliver(event)
        except Exception as e:
            logger.warning(f"Dropped {event.type} event for upload {upload_id}: {e}")

    @abstractmethod
    def _deliver(self, event: ProgressEvent) -> None:
        """Hand the event to the transport."""


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``InMemoryProgressPublisher.subscribe``."""

    upload_id: str
    subscription_id: int


class InMemoryProgressPublisher(ProgressPublisher):
    """
    Process-local fan-out.

    Any number of callbacks can subscribe to the same upload id; each
    unsubscribe removes exactly one of them and drops the id when the last
    subscriber leaves.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[str, Dict[int, EventCallback]] = defaultdict(dict)

    def subscribe(self, upload_id: str, callback: EventCallback) -> Subscription:
        with self._lock:
            subscription_id = next(self._ids)
            self._subscribers[upload_id][subscription_id] = callback
        logger.debug(f"Subscriber {subscription_id} registered for upload {upload_id}")
        return Subscription(upload_id=upload_id, subscription_id=subscription_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            callbacks = self._subscribers.get(subscription.upload_id)
            if callbacks is None:
                return
            callbacks.pop(subscription.subscription_id, None)
            if not callbacks:
                del self._subscribers[subscription.upload_id]

    def subscriber_count(self, upload_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(upload_id, {}))

    def _deliver(self, event: ProgressEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(event.upload_id, {}).values())

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                # One broken subscriber must not starve the others
                logger.warning(f"Progress subscriber failed for upload {event.upload_id}: {e}")

    async def stream(self, upload_id: str) -> AsyncIterator[ProgressEvent]:
        """Async view of the events for one upload (used by the WebSocket channel)."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        subscription = self.subscribe(
            upload_id, lambda event: loop.call_soon_threadsafe(queue.put_nowait, event)
        )
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(subscription)


def progress_channel(prefix: str, upload_id: str) -> str:
    return f"{prefix}:{upload_id}"


class RedisProgressPublisher(ProgressPublisher):
    """Cross-process fan-out over Redis pub/sub, one channel per upload."""

    def __init__(self, client: redis.Redis, channel_prefix: str = "progress"):
        self._client = client
        self._channel_prefix = channel_prefix

    def _deliver(self, event: ProgressEvent) -> None:
        receivers = self._client.publish(
            progress_channel(self._channel_prefix, event.upload_id), event.to_json()
        )
        logger.debug(f"Published {event.type} for upload {event.upload_id} to {receivers} receiver(s)")


class RedisProgressSubscriber:
    """Subscriber side of ``RedisProgressPublisher`` for async servers."""

    def __init__(self, client: aioredis.Redis, channel_prefix: str = "progress"):
        self._client = client
        self._channel_prefix = channel_prefix

    async def stream(self, upload_id: str) -> AsyncIterator[ProgressEvent]:
        channel = progress_channel(self._channel_prefix, upload_id)
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message["data"]
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                try:
                    yield ProgressEvent.from_json(raw)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed progress message on {channel}: {e}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self) -> None:
        await self._client.aclose()
