"""Periodic process-memory monitoring.

Samples RSS on an interval into a bounded history. When usage crosses the
threshold it forces a ``gc.collect()`` pass and triggers a cleanup run
(unless one is already in progress). A simple leak heuristic compares the
average of the latest readings against the window before them.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cyclecore.cleanup.process import process_rss
from cyclecore.monitoring.events import EventBus, MemoryThresholdExceeded

if TYPE_CHECKING:
    from cyclecore.cleanup.pipeline import CleanupPipeline

logger = logging.getLogger(__name__)

HISTORY_SIZE = 100
LEAK_WINDOW = 10
LEAK_GROWTH_RATIO = 0.10
TREND_RATIO = 0.05
WARNING_RATIO = 0.8


@dataclass(frozen=True)
class MemoryReading:
    timestamp: float
    rss_bytes: int


class MemoryGuard:
    """Watches process memory and reacts when it runs high."""

    def __init__(
        self,
        *,
        threshold_bytes: int = 1024 * 1024 * 1024,
        check_interval_seconds: float = 30.0,
        cleanup: CleanupPipeline | None = None,
        event_bus: EventBus | None = None,
        sampler: Callable[[], int] = process_rss,
    ) -> None:
        self._threshold = threshold_bytes
        self._interval = check_interval_seconds
        self._cleanup = cleanup
        self._events = event_bus
        self._sample = sampler

        self._history: deque[MemoryReading] = deque(maxlen=HISTORY_SIZE)
        self._peak = 0
        self._threshold_hits = 0
        self._forced_collections = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def threshold_bytes(self) -> int:
        return self._threshold

    @property
    def current_bytes(self) -> int:
        return self._history[-1].rss_bytes if self._history else 0

    @property
    def peak_bytes(self) -> int:
        return self._peak

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    async def check(self) -> MemoryReading:
        """Take one reading and react if it is over the threshold."""
        reading = MemoryReading(timestamp=time.time(), rss_bytes=self._sample())
        self._history.append(reading)
        self._peak = max(self._peak, reading.rss_bytes)

        if reading.rss_bytes > self._threshold:
            await self._handle_threshold_exceeded(reading)
        return reading

    async def _handle_threshold_exceeded(self, reading: MemoryReading) -> None:
        self._threshold_hits += 1
        logger.warning(
            "Memory threshold exceeded: %dMB > %dMB",
            reading.rss_bytes // (1024 * 1024),
            self._threshold // (1024 * 1024),
        )
        if self._events is not None:
            self._events.publish(
                MemoryThresholdExceeded(rss_bytes=reading.rss_bytes, threshold_bytes=self._threshold)
            )

        gc.collect()
        self._forced_collections += 1

        if self._cleanup is None:
            return
        if self._cleanup.is_running:
            logger.info("Cleanup already running, skipping memory-triggered cleanup")
            return
        await self._cleanup.execute(f"memory-guard-{int(reading.timestamp * 1000)}")

    def check_for_leaks(self) -> dict:
        """Compare the latest window of readings with the one before it."""
        if len(self._history) < LEAK_WINDOW * 2:
            return {"suspected": False, "reason": "insufficient readings"}

        readings = [r.rss_bytes for r in self._history]
        recent = readings[-LEAK_WINDOW:]
        previous = readings[-LEAK_WINDOW * 2 : -LEAK_WINDOW]
        recent_avg = sum(recent) / LEAK_WINDOW
        previous_avg = sum(previous) / LEAK_WINDOW
        growth = (recent_avg - previous_avg) / previous_avg if previous_avg else 0.0

        suspected = growth > LEAK_GROWTH_RATIO
        if suspected:
            logger.warning("Potential memory leak: %.1f%% growth across readings", growth * 100)
        return {
            "suspected": suspected,
            "growth_ratio": round(growth, 4),
            "recent_avg_bytes": int(recent_avg),
            "previous_avg_bytes": int(previous_avg),
        }

    def trend(self) -> str:
        """``increasing``, ``decreasing`` or ``stable`` over the leak window."""
        if len(self._history) < LEAK_WINDOW:
            return "stable"
        window = [r.rss_bytes for r in self._history][-LEAK_WINDOW:]
        first, last = window[0], window[-1]
        if not first:
            return "stable"
        change = (last - first) / first
        if change > TREND_RATIO:
            return "increasing"
        if change < -TREND_RATIO:
            return "decreasing"
        return "stable"

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Sample every ``check_interval_seconds`` until :meth:`stop` is called."""
        logger.info(
            "Memory monitoring started (interval=%.0fs, threshold=%dMB)",
            self._interval,
            self._threshold // (1024 * 1024),
        )
        while not self._stop_event.is_set():
            try:
                await self.check()
            except Exception:
                logger.exception("Memory check failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Memory monitoring stopped")

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Memory monitoring already running — skipping")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="memory-guard")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        readings = [r.rss_bytes for r in self._history]
        average = int(sum(readings) / len(readings)) if readings else 0
        return {
            "current_bytes": self.current_bytes,
            "peak_bytes": self._peak,
            "average_bytes": average,
            "threshold_bytes": self._threshold,
            "readings": len(readings),
            "threshold_hits": self._threshold_hits,
            "forced_collections": self._forced_collections,
            "trend": self.trend(),
        }

    def health_check(self) -> dict:
        current = self.current_bytes
        if current > self._threshold:
            status = "critical"
        elif current > self._threshold * WARNING_RATIO:
            status = "warning"
        else:
            status = "healthy"
        return {
            "status": status,
            "current_bytes": current,
            "threshold_bytes": self._threshold,
            "leak_check": self.check_for_leaks(),
        }
