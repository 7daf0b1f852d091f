"""Typed events delivered over bounded subscriber channels.

Components publish without knowing who listens. Each subscriber owns an
``asyncio.Queue`` with a fixed capacity; when a subscriber falls behind, its
oldest event is dropped so publishers never block.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base event; ``timestamp`` is wall-clock seconds."""

    timestamp: float = field(default_factory=time.time, kw_only=True)


@dataclass(frozen=True)
class ProxyDeactivated(Event):
    proxy_id: str
    failure_count: int
    reactivate_in_seconds: float


@dataclass(frozen=True)
class ProxyReactivated(Event):
    proxy_id: str


@dataclass(frozen=True)
class CleanupCompleted(Event):
    job_id: str
    cycle_id: str
    success: bool
    duration_ms: float
    error_count: int


@dataclass(frozen=True)
class LeakDetected(Event):
    job_id: str
    growth_bytes: int


@dataclass(frozen=True)
class MemoryThresholdExceeded(Event):
    rss_bytes: int
    threshold_bytes: int


class EventBus:
    """Fan-out of typed events to bounded per-subscriber queues."""

    def __init__(self, default_maxsize: int = 256) -> None:
        self._default_maxsize = default_maxsize
        self._subscribers: list[asyncio.Queue[Event]] = []
        self._published = 0
        self._dropped = 0

    def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Event]:
        """Register a new subscriber and return its channel."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize or self._default_maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: Event) -> None:
        """Deliver *event* to every subscriber, dropping the oldest entry when full."""
        self._published += 1
        for queue in self._subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                    self._dropped += 1
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    def get_stats(self) -> dict:
        return {
            "subscribers": len(self._subscribers),
            "published": self._published,
            "dropped": self._dropped,
        }


async def log_events(queue: asyncio.Queue[Event]) -> None:
    """Observer loop: log every event from *queue* until cancelled."""
    while True:
        event = await queue.get()
        if isinstance(event, (LeakDetected, MemoryThresholdExceeded, ProxyDeactivated)):
            logger.warning("Event: %s", event)
        else:
            logger.info("Event: %s", event)
