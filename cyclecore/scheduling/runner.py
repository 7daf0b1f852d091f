"""Cycle runner: the scheduler loop.

One cooperative loop pulls a buffer from the generator and, for each task,
waits the delay computed by the interval scheduler, assigns a proxy and hands
the task to the executor. Execution is bounded by a semaphore and a per-task
timeout; every outcome in a buffer is gathered before the next buffer is
pulled. When the generator completes a cycle the cleanup pipeline runs
before the next cycle starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from cyclecore.middleware.error_handler import PoolExhaustedError
from cyclecore.scheduling.executor import TaskExecutor
from cyclecore.scheduling.generator import SearchSpaceGenerator
from cyclecore.scheduling.interval import IntervalScheduler
from cyclecore.scheduling.types import SearchTask, TaskOutcome

if TYPE_CHECKING:
    from cyclecore.cleanup.pipeline import CleanupPipeline
    from cyclecore.proxy.pool import ProxyPool

logger = logging.getLogger(__name__)


class CycleRunner:
    """Drives tasks from the generator through the executor.

    Parameters
    ----------
    generator / scheduler:
        Task source and cadence.
    executor:
        Runs a single task and returns its outcome.
    proxy_pool:
        When set, each task is assigned a proxy before execution and the
        outcome is reported back. ``None`` leaves egress to the executor.
    cleanup:
        Pipeline executed after every completed cycle.
    max_concurrency:
        Maximum number of tasks executing at once.
    task_timeout_seconds:
        Per-task execution timeout.
    on_task_complete:
        Optional callback invoked with every finished task.
    """

    def __init__(
        self,
        *,
        generator: SearchSpaceGenerator,
        scheduler: IntervalScheduler,
        executor: TaskExecutor,
        proxy_pool: ProxyPool | None = None,
        cleanup: CleanupPipeline | None = None,
        max_concurrency: int = 3,
        task_timeout_seconds: float = 30.0,
        on_task_complete: Callable[[SearchTask], None] | None = None,
    ) -> None:
        self._generator = generator
        self._scheduler = scheduler
        self._executor = executor
        self._pool = proxy_pool
        self._cleanup = cleanup
        self._max_concurrency = max_concurrency
        self._task_timeout = task_timeout_seconds
        self._on_task_complete = on_task_complete

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

        # Stats
        self._active = 0
        self._completed = 0
        self._succeeded = 0
        self._failed = 0
        self._direct_fallbacks = 0
        self._cycles_completed = 0
        self._total_duration_ms = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Run the loop in a background task."""
        if self.is_running:
            logger.warning("Cycle runner already started — skipping")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="cycle-runner")

    async def stop(self, timeout: float = 30.0) -> None:
        """Interrupt any pending delay and wait for in-flight tasks."""
        self._stop_event.set()
        if self._task is None:
            return
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            logger.warning("Cycle runner did not stop within %.1fs — cancelling", timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def run(self, max_buffers: int | None = None) -> None:
        """Loop over buffers until stopped (or *max_buffers* buffers ran)."""
        logger.info(
            "Cycle runner started (concurrency=%d, %d tasks per cycle)",
            self._max_concurrency,
            self._generator.total_combinations,
        )
        buffers = 0
        while not self._stop_event.is_set():
            await self.run_buffer()
            buffers += 1
            if self._generator.cycle_complete and not self._stop_event.is_set():
                await self._complete_cycle()
            if max_buffers is not None and buffers >= max_buffers:
                break
        logger.info("Cycle runner stopped")

    # ------------------------------------------------------------------
    # Buffer execution
    # ------------------------------------------------------------------

    async def run_buffer(self) -> list[SearchTask]:
        """Execute one buffer of tasks and return those that were started."""
        batch = self._generator.next_buffer()
        started: list[SearchTask] = []
        pending: list[asyncio.Task[None]] = []

        for task in batch:
            if await self._wait(self._scheduler.next_delay_ms() / 1000):
                break
            self._assign_proxy(task)
            started.append(task)
            pending.append(asyncio.create_task(self._execute(task), name=f"search-task-{task.id}"))

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return started

    async def _wait(self, seconds: float) -> bool:
        """Sleep for *seconds*; return ``True`` if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _assign_proxy(self, task: SearchTask) -> None:
        if self._pool is None:
            return
        try:
            record = self._pool.next(task.device.device_type, task.location.country)
        except PoolExhaustedError:
            self._direct_fallbacks += 1
            logger.warning(
                "Proxy pool exhausted, task runs direct",
                extra={"task_id": task.id, "cycle_id": task.cycle},
            )
            return
        task.assign_proxy(record)

    async def _execute(self, task: SearchTask) -> None:
        async with self._semaphore:
            self._active += 1
            started = time.monotonic()
            try:
                outcome = await asyncio.wait_for(
                    self._executor.execute(task), timeout=self._task_timeout
                )
            except asyncio.TimeoutError:
                outcome = TaskOutcome(
                    success=False, error=f"Task timed out after {self._task_timeout}s"
                )
            except Exception as exc:
                outcome = TaskOutcome(success=False, error=str(exc) or exc.__class__.__name__)
            finally:
                self._active -= 1

        elapsed_ms = (time.monotonic() - started) * 1000
        if not outcome.duration_ms:
            outcome.duration_ms = elapsed_ms
        task.record_outcome(outcome)

        if task.proxy is not None and self._pool is not None:
            self._pool.report_result(task.proxy.id, outcome.success, outcome.duration_ms)

        self._completed += 1
        self._total_duration_ms += outcome.duration_ms
        log_extra = {
            "task_id": task.id,
            "cycle_id": task.cycle,
            "proxy_id": task.proxy.id if task.proxy else None,
            "duration_ms": round(outcome.duration_ms, 2),
        }
        if outcome.success:
            self._succeeded += 1
            logger.info("Task completed: %s on %s", task.keyword, task.platform.name, extra=log_extra)
        else:
            self._failed += 1
            logger.error(
                "Task failed: %s on %s",
                task.keyword,
                task.platform.name,
                extra={**log_extra, "error_reason": outcome.error},
            )

        if self._on_task_complete:
            try:
                self._on_task_complete(task)
            except Exception:
                logger.exception("on_task_complete callback error for task %s", task.id)

    async def _complete_cycle(self) -> None:
        cycle = self._generator.cycle
        self._cycles_completed += 1
        logger.info("Cycle %d complete", cycle, extra={"cycle_id": cycle})
        if self._cleanup is None:
            return
        try:
            await self._cleanup.execute(f"cycle-{cycle}")
        except Exception:
            logger.exception("Post-cycle cleanup failed", extra={"cycle_id": cycle})

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        avg_ms = self._total_duration_ms / self._completed if self._completed else 0.0
        return {
            "running": self.is_running,
            "active_tasks": self._active,
            "completed": self._completed,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "direct_fallbacks": self._direct_fallbacks,
            "cycles_completed": self._cycles_completed,
            "avg_duration_ms": round(avg_ms, 2),
            "generator": self._generator.get_stats(),
            "scheduler": self._scheduler.get_stats(),
        }
