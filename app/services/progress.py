"""Progress registry: bounded per-report event queues.

Publishing never blocks: when a subscriber's queue is full the oldest event
is dropped. Publishing to a report with no subscriber is a no-op. Progress is
notification only; nothing in the pipeline depends on delivery.

Lifecycle: ``subscribe`` registers a queue, ``close`` ends every subscription
of a report, and a subscription used as an async context manager
unregisters itself on exit.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STATUS = "status"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    report_id: str
    type: EventType
    progress: int
    message: str = ""
    status: str | None = None
    data: dict | None = field(default=None, compare=False)

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "type": self.type.value,
            "progress": self.progress,
            "message": self.message,
            "status": self.status,
            "data": self.data,
        }


_CLOSED = object()


class Subscription:
    """One consumer's view of a report's events."""

    def __init__(self, registry: "ProgressRegistry", report_id: str, maxsize: int):
        self.registry = registry
        self.report_id = report_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, item) -> None:
        """Enqueue without blocking, dropping the oldest item when full."""
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(item)

    async def get(self) -> ProgressEvent | None:
        """Next event, or None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        item = await self.queue.get()
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.registry.unsubscribe(self)


class ProgressRegistry:
    """Lock-guarded map of report id → live subscriptions."""

    def __init__(self, queue_size: int | None = None):
        self.queue_size = queue_size or settings.progress_queue_size
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, report_id: str) -> Subscription:
        subscription = Subscription(self, report_id, self.queue_size)
        with self._lock:
            self._subscriptions.setdefault(report_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.report_id)
            if not subscriptions:
                return
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.report_id]

    def publish(self, event: ProgressEvent) -> int:
        """Deliver to every subscriber of the report. Returns the number reached."""
        with self._lock:
            subscriptions = list(self._subscriptions.get(event.report_id, ()))
        for subscription in subscriptions:
            subscription.offer(event)
        return len(subscriptions)

    def close(self, report_id: str) -> None:
        """End every subscription of a report; queued events stay readable."""
        with self._lock:
            subscriptions = self._subscriptions.pop(report_id, [])
        for subscription in subscriptions:
            subscription.offer(_CLOSED)

    def subscriber_count(self, report_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(report_id, ()))


progress_registry = ProgressRegistry()
