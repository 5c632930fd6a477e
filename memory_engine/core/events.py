"""
Memory event channel.

Subscribers get their own asyncio queue; publishing never blocks the
memory store. A subscriber that falls ``max_queue_size`` events behind
drops its oldest events.
"""

import asyncio

import structlog

from memory_engine.models.domain import MemoryEvent

logger = structlog.get_logger(__name__)


class EventChannel:
    """Fan-out of MemoryEvents to subscriber queues."""

    def __init__(self, max_queue_size: int = 1000) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: list[asyncio.Queue[MemoryEvent]] = []

    def subscribe(self) -> asyncio.Queue[MemoryEvent]:
        queue: asyncio.Queue[MemoryEvent] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[MemoryEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: MemoryEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                logger.warning("event_subscriber_lagging", dropped_kind=event.kind.value)
            queue.put_nowait(event)
