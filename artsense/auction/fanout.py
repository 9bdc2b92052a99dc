"""Real-time distribution of accepted bids to connected observers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from google.cloud import pubsub_v1

from ..transport.canonical_json import canonical_dumps
from .models import BidEvent

logger = logging.getLogger(__name__)


class Subscription:
    """An observer's bounded inbox; the fan-out never waits on it."""

    def __init__(self, lot_id: str | None, queue_size: int) -> None:
        self.subscription_id = f"sub_{uuid4().hex}"
        self.lot_id = lot_id
        self.dropped = 0
        self._queue: asyncio.Queue[BidEvent | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    def matches(self, lot_id: str) -> bool:
        return self.lot_id is None or self.lot_id == lot_id

    def offer(self, event: BidEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def next_event(self) -> BidEvent | None:
        """Wait for the next event; ``None`` once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BidEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event


class _PublisherProtocol:
    async def publish(self, event: BidEvent) -> None:  # pragma: no cover - protocol
        raise NotImplementedError


class _PubSubPublisher(_PublisherProtocol):
    def __init__(self, options: dict[str, Any]) -> None:
        self._project_id = options.get("project_id")
        if not self._project_id:
            raise ValueError("pubsub backend requires project_id")
        self._topic = options.get("topic", "artsense-bids")
        self._publisher = pubsub_v1.PublisherClient()

    def _topic_path(self) -> str:
        if self._topic.startswith("projects/"):
            return self._topic
        return self._publisher.topic_path(self._project_id, self._topic)

    async def publish(self, event: BidEvent) -> None:
        message = canonical_dumps(event.to_dict())
        future = self._publisher.publish(
            self._topic_path(),
            message,
            lot_id=event.lot_id,
            sequence=str(event.sequence),
        )
        await asyncio.to_thread(future.result)


class BidFanout:
    """Lifecycle-scoped registry of live observers.

    ``broadcast`` only enqueues, so a slow or vanished observer costs the
    write path nothing. Events for one lot are delivered in sequence order;
    an event older than the last one delivered for its lot is discarded.
    """

    def __init__(
        self,
        backend: str = "local",
        options: dict[str, Any] | None = None,
        *,
        queue_size: int = 100,
    ) -> None:
        options = options or {}
        self._relay: _PublisherProtocol | None = None
        if backend == "pubsub":
            self._relay = _PubSubPublisher(options)
        elif backend != "local":
            raise ValueError(f"unknown fanout backend {backend}")
        self._queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._last_sequence: dict[str, int] = {}
        self._relay_tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, lot_id: str | None = None) -> Subscription:
        async with self._lock:
            if self._closed:
                raise RuntimeError("fanout is shut down")
            subscription = Subscription(lot_id, self._queue_size)
            self._subscriptions[subscription.subscription_id] = subscription
        logger.info(
            "observer %s subscribed lot=%s", subscription.subscription_id, lot_id or "*"
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Drop ``subscription`` from the registry and end its stream.

        Never suspends, so it completes even inside a cancelled handler.
        """
        self._subscriptions.pop(subscription.subscription_id, None)
        subscription.close()
        if subscription.dropped:
            logger.warning(
                "observer %s left after missing %d events",
                subscription.subscription_id,
                subscription.dropped,
            )

    async def broadcast(self, event: BidEvent) -> int:
        """Deliver ``event`` to matching observers; returns how many took it."""
        delivered = 0
        async with self._lock:
            if self._closed:
                return 0
            last = self._last_sequence.get(event.lot_id, 0)
            if event.sequence <= last:
                logger.warning(
                    "dropping stale event lot=%s sequence=%d last=%d",
                    event.lot_id,
                    event.sequence,
                    last,
                )
                return 0
            self._last_sequence[event.lot_id] = event.sequence
            for subscription in self._subscriptions.values():
                if subscription.matches(event.lot_id) and subscription.offer(event):
                    delivered += 1
        if self._relay is not None:
            task = asyncio.create_task(self._relay_event(event))
            self._relay_tasks.add(task)
            task.add_done_callback(self._relay_tasks.discard)
        return delivered

    async def _relay_event(self, event: BidEvent) -> None:
        try:
            await self._relay.publish(event)
        except Exception:
            logger.exception(
                "relay publish failed lot=%s sequence=%d", event.lot_id, event.sequence
            )

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()
        if self._relay_tasks:
            await asyncio.gather(*self._relay_tasks, return_exceptions=True)
