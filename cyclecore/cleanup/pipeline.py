"""Post-cycle cleanup pipeline.

Releases everything registered during a cycle in four strictly ordered
phases:

1. browser termination: graceful close raced against a timeout, liveness
   verification, force kill as a last resort;
2. memory release: close registered references, then several
   ``gc.collect()`` passes with RSS sampled before and after;
3. file and session release: unlink temp files, close sessions;
4. validation: all registries empty, memory sampled, re-checked after a
   short delay before a failure is recorded.

Each phase is timed and bounded by its own timeout. Failures are collected
into the job rather than raised, unless ``continue_on_error`` is off. The
registries a phase owns are cleared when the phase ends, whether it
succeeded, failed or timed out. Only one run is active at a time; a second
caller polls until the slot frees up or the queue timeout elapses.
"""

from __future__ import annotations

import asyncio
import gc
import inspect
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cyclecore.cleanup.job import CleanupJob, CleanupStep
from cyclecore.cleanup.process import force_kill, pid_alive, process_rss
from cyclecore.cleanup.registry import BrowserEntry, Disposable, ResourceRegistry
from cyclecore.config.profiles import CleanupConfig
from cyclecore.middleware.error_handler import (
    CleanupPhaseError,
    CleanupTimeoutError,
    LeakWarning,
)
from cyclecore.monitoring.events import CleanupCompleted, EventBus, LeakDetected

logger = logging.getLogger(__name__)

BROWSER_PHASE = "browser_termination"
MEMORY_PHASE = "memory_release"
FILES_PHASE = "files_and_sessions"
VALIDATION_PHASE = "validation"
PHASES = (BROWSER_PHASE, MEMORY_PHASE, FILES_PHASE, VALIDATION_PHASE)

PhaseFn = Callable[[CleanupJob, CleanupStep], Awaitable[bool | None]]
ReleaseFn = Callable[[CleanupJob, CleanupStep], Awaitable[None]]


async def _close(resource: Disposable) -> None:
    """Call ``close()`` and await the result if it is awaitable."""
    result = resource.close()
    if inspect.isawaitable(result):
        await result


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return str(exc) or exc.__class__.__name__


class CleanupPipeline:
    """Ordered, verified, best-effort release of cycle resources.

    Parameters
    ----------
    registry:
        The registry producers register into. A fresh one is created if omitted.
    config:
        Timeouts and knobs; defaults to ``CleanupConfig()``.
    memory_sampler:
        Returns the current memory footprint in bytes (process RSS by default).
    liveness_probe / killer:
        PID liveness check and force-kill used during browser termination.
    """

    def __init__(
        self,
        registry: ResourceRegistry | None = None,
        config: CleanupConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        memory_sampler: Callable[[], int] = process_rss,
        liveness_probe: Callable[[int], bool] = pid_alive,
        killer: Callable[[int], bool] = force_kill,
    ) -> None:
        self.registry = registry or ResourceRegistry()
        self._config = config or CleanupConfig()
        self._events = event_bus
        self._sample_memory = memory_sampler
        self._is_alive = liveness_probe
        self._kill = killer

        self._running = False
        self._history: deque[CleanupJob] = deque(maxlen=self._config.history_size)
        self._preserved: dict[str, Any] = {}
        self._metrics: dict[str, float] = {
            "total_cleanups": 0,
            "successful_cleanups": 0,
            "failed_cleanups": 0,
            "average_duration_ms": 0.0,
            "memory_leaks_detected": 0,
            "browser_termination_failures": 0,
            "file_cleanup_failures": 0,
        }

    # ------------------------------------------------------------------
    # Registration passthroughs
    # ------------------------------------------------------------------

    def register_browser(self, browser_id: str, handle: Disposable, *, pid: int | None = None) -> None:
        self.registry.register_browser(browser_id, handle, pid=pid)

    def register_memory_ref(self, ref_id: str, resource: Disposable, *, size_bytes: int = 0) -> None:
        self.registry.register_memory_ref(ref_id, resource, size_bytes=size_bytes)

    def register_temp_file(self, path: str | Path, **metadata: object) -> None:
        self.registry.register_temp_file(path, **metadata)

    def register_session(self, session_id: str, session: Disposable) -> None:
        self.registry.register_session(session_id, session)

    def store_result(self, key: str, result: Any) -> None:
        """Keep *result* across cleanups (only when ``preserve_results`` is on)."""
        if self._config.preserve_results:
            self._preserved[key] = result

    @property
    def preserved_results(self) -> dict[str, Any]:
        return dict(self._preserved)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[CleanupJob]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, cycle_id: str) -> CleanupJob:
        """Run all phases for *cycle_id* and return the archived job.

        Raises ``CleanupTimeoutError`` if another run holds the slot for
        longer than the queue timeout, and ``CleanupPhaseError`` for a failed
        phase when ``continue_on_error`` is off.
        """
        if self._running:
            logger.warning(
                "Cleanup already in progress, queuing request",
                extra={"cycle_id": cycle_id},
            )
            await self._wait_for_slot(cycle_id)

        self._running = True
        job = CleanupJob(cycle_id=cycle_id)
        started = time.monotonic()
        logger.info(
            "Starting cleanup %s: %s",
            job.id,
            self.registry.counts(),
            extra={"cycle_id": cycle_id},
        )

        phases: list[tuple[str, PhaseFn, float, ReleaseFn | None]] = [
            (BROWSER_PHASE, self._terminate_browsers,
             self._config.browser_phase_timeout, self._force_release_browsers),
            (MEMORY_PHASE, self._release_memory,
             self._config.memory_release_timeout, self._clear_memory_refs),
            (FILES_PHASE, self._release_files_and_sessions,
             self._config.temp_file_cleanup_timeout, self._clear_files_and_sessions),
            (VALIDATION_PHASE, self._validate,
             self._config.validation_timeout, None),
        ]

        try:
            for name, fn, timeout, release in phases:
                await self._run_phase(job, name, fn, timeout, release)
        finally:
            job.finished_at = datetime.now(timezone.utc)
            job.duration_ms = (time.monotonic() - started) * 1000
            job.success = len(job.steps) == len(PHASES) and all(s.success for s in job.steps)
            self._archive(job)
            self._running = False

        return job

    async def _wait_for_slot(self, cycle_id: str) -> None:
        deadline = time.monotonic() + self._config.queue_timeout
        while self._running:
            if time.monotonic() >= deadline:
                raise CleanupTimeoutError(
                    f"Cleanup for {cycle_id} waited more than {self._config.queue_timeout}s",
                    cycle_id=cycle_id,
                )
            await asyncio.sleep(self._config.queue_poll_interval)

    async def _run_phase(
        self,
        job: CleanupJob,
        name: str,
        fn: PhaseFn,
        timeout: float,
        release: ReleaseFn | None,
    ) -> None:
        step = CleanupStep(name=name)
        job.steps.append(step)
        started = time.monotonic()
        ok: bool | None = None

        try:
            ok = await asyncio.wait_for(fn(job, step), timeout=timeout)
        except asyncio.TimeoutError:
            step.errors.append({"error": f"phase timed out after {timeout}s"})
        except Exception as exc:
            logger.exception("Cleanup phase %s raised", name, extra={"cycle_id": job.cycle_id})
            step.errors.append({"error": _describe(exc)})
        finally:
            if release is not None:
                await release(job, step)
            step.duration_ms = (time.monotonic() - started) * 1000

        step.success = not step.errors and ok is not False
        for error in step.errors:
            context = {k: v for k, v in error.items() if k != "error"}
            job.add_error(name, error["error"], **context)

        logger.info(
            "Cleanup phase %s finished (success=%s, errors=%d)",
            name,
            step.success,
            len(step.errors),
            extra={"cycle_id": job.cycle_id, "phase": name, "duration_ms": round(step.duration_ms, 2)},
        )

        if step.errors:
            job.warnings.append(f"{name}: {len(step.errors)} error(s)")
            if not self._config.continue_on_error:
                raise CleanupPhaseError(
                    f"Cleanup phase {name} failed: {step.errors[0]['error']}",
                    phase=name,
                    cycle_id=job.cycle_id,
                )

    def _archive(self, job: CleanupJob) -> None:
        m = self._metrics
        m["total_cleanups"] += 1
        if job.success:
            m["successful_cleanups"] += 1
        else:
            m["failed_cleanups"] += 1
        total = m["total_cleanups"]
        m["average_duration_ms"] = ((m["average_duration_ms"] * (total - 1)) + job.duration_ms) / total

        self._history.append(job)
        logger.info(
            "Cleanup %s completed (success=%s, errors=%d, warnings=%d)",
            job.id,
            job.success,
            len(job.errors),
            len(job.warnings),
            extra={"cycle_id": job.cycle_id, "duration_ms": round(job.duration_ms, 2)},
        )
        if self._events is not None:
            self._events.publish(
                CleanupCompleted(
                    job_id=job.id,
                    cycle_id=job.cycle_id,
                    success=job.success,
                    duration_ms=job.duration_ms,
                    error_count=len(job.errors),
                )
            )

    # ------------------------------------------------------------------
    # Phase 1: browsers
    # ------------------------------------------------------------------

    async def _terminate_browsers(self, job: CleanupJob, step: CleanupStep) -> None:
        entries = list(self.registry.browsers.values())
        results: list[dict] = []
        step.details["browsers"] = results

        # Each browser is bounded by its own close timeout
        await asyncio.gather(
            *(self._terminate_browser(job, step, entry, results) for entry in entries)
        )

    async def _terminate_browser(
        self,
        job: CleanupJob,
        step: CleanupStep,
        entry: BrowserEntry,
        results: list[dict],
    ) -> None:
        started = time.monotonic()
        result: dict = {"browser_id": entry.id, "pid": entry.pid}
        try:
            await asyncio.wait_for(_close(entry.handle), timeout=self._config.browser_close_timeout)
            if not await self._verify_terminated(entry):
                raise RuntimeError("termination verification failed")
            job.metrics.browsers_closed += 1
            result["success"] = True
        except Exception as exc:
            message = _describe(exc)
            result["success"] = False
            result["error"] = message
            step.errors.append({"error": message, "browser_id": entry.id})
            self._metrics["browser_termination_failures"] += 1
            logger.error(
                "Browser termination failed: %s (pid=%s): %s",
                entry.id,
                entry.pid,
                message,
                extra={"cycle_id": job.cycle_id, "phase": BROWSER_PHASE},
            )
            if self._force_terminate(entry):
                job.metrics.browsers_force_killed += 1
        self.registry.unregister_browser(entry.id)
        result["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        results.append(result)

    async def _verify_terminated(self, entry: BrowserEntry) -> bool:
        retries = self._config.browser_verification_retries
        for attempt in range(1, retries + 1):
            if entry.pid is not None:
                if not self._is_alive(entry.pid):
                    return True
            else:
                is_connected = getattr(entry.handle, "is_connected", None)
                if not callable(is_connected) or not is_connected():
                    return True
            if attempt < retries:
                await asyncio.sleep(self._config.browser_verification_delay)
        return False

    def _force_terminate(self, entry: BrowserEntry) -> bool:
        if entry.pid is None:
            logger.warning("Cannot force-kill browser %s: pid unknown", entry.id)
            return False
        killed = self._kill(entry.pid)
        if killed:
            logger.warning("Browser force terminated: %s (pid=%d)", entry.id, entry.pid)
        else:
            logger.error("Force termination failed: %s (pid=%d)", entry.id, entry.pid)
        return killed

    async def _force_release_browsers(self, job: CleanupJob, step: CleanupStep) -> None:
        """Close and drop every browser the phase did not get to release."""
        entries = list(self.registry.browsers.values())
        self.registry.browsers.clear()
        if not entries:
            return

        async def _last_close(entry: BrowserEntry) -> None:
            try:
                await asyncio.wait_for(
                    _close(entry.handle), timeout=self._config.browser_close_timeout
                )
            except Exception as exc:
                logger.error("Forced close failed: %s: %s", entry.id, _describe(exc))
            if entry.pid is not None and self._is_alive(entry.pid):
                if self._force_terminate(entry):
                    job.metrics.browsers_force_killed += 1

        await asyncio.gather(*(_last_close(entry) for entry in entries))
        for entry in entries:
            self._metrics["browser_termination_failures"] += 1
            step.errors.append(
                {"error": "released after phase timeout", "browser_id": entry.id}
            )
        logger.warning(
            "Force released %d browser(s) after phase timeout",
            len(entries),
            extra={"cycle_id": job.cycle_id, "phase": BROWSER_PHASE},
        )

    # ------------------------------------------------------------------
    # Phase 2: memory
    # ------------------------------------------------------------------

    async def _release_memory(self, job: CleanupJob, step: CleanupStep) -> None:
        before = self._sample_memory()
        step.details["memory_before"] = before

        for entry in list(self.registry.memory_refs.values()):
            try:
                await _close(entry.resource)
                job.metrics.memory_refs_released += 1
            except Exception as exc:
                step.errors.append({"error": _describe(exc), "ref_id": entry.id})
                logger.error("Memory reference release failed: %s: %s", entry.id, exc)
            self.registry.unregister_memory_ref(entry.id)
        self.registry.memory_refs.clear()

        iterations: list[dict] = []
        for i in range(1, self._config.gc_iterations + 1):
            pass_before = self._sample_memory()
            collected = gc.collect()
            await asyncio.sleep(self._config.gc_delay)
            iterations.append(
                {
                    "iteration": i,
                    "collected": collected,
                    "released_bytes": pass_before - self._sample_memory(),
                }
            )
        step.details["gc_iterations"] = iterations

        after = self._sample_memory()
        freed = before - after
        step.details["memory_after"] = after
        job.metrics.memory_freed_bytes = freed

        if freed < 0 and -freed > self._config.memory_leak_threshold:
            warning = LeakWarning(-freed, self._config.memory_leak_threshold)
            job.warnings.append(warning.message)
            self._metrics["memory_leaks_detected"] += 1
            logger.warning(warning.message, extra={"cycle_id": job.cycle_id, "phase": MEMORY_PHASE})
            if self._events is not None:
                self._events.publish(LeakDetected(job_id=job.id, growth_bytes=-freed))

    async def _clear_memory_refs(self, job: CleanupJob, step: CleanupStep) -> None:
        self.registry.memory_refs.clear()

    # ------------------------------------------------------------------
    # Phase 3: files and sessions
    # ------------------------------------------------------------------

    async def _release_files_and_sessions(self, job: CleanupJob, step: CleanupStep) -> None:
        already_gone = 0
        for key, entry in list(self.registry.temp_files.items()):
            try:
                await asyncio.to_thread(entry.path.unlink)
                job.metrics.temp_files_removed += 1
            except FileNotFoundError:
                already_gone += 1
            except OSError as exc:
                step.errors.append({"error": _describe(exc), "path": str(entry.path)})
                self._metrics["file_cleanup_failures"] += 1
                logger.error("Temp file removal failed: %s: %s", entry.path, exc)
            self.registry.temp_files.pop(key, None)

        for entry in list(self.registry.sessions.values()):
            try:
                await _close(entry.session)
                job.metrics.sessions_released += 1
            except Exception as exc:
                step.errors.append({"error": _describe(exc), "session_id": entry.id})
                logger.error("Session release failed: %s: %s", entry.id, exc)
            self.registry.unregister_session(entry.id)

        step.details["files_already_gone"] = already_gone
        step.details["preserved_results"] = len(self._preserved)

    async def _clear_files_and_sessions(self, job: CleanupJob, step: CleanupStep) -> None:
        self.registry.temp_files.clear()
        self.registry.sessions.clear()

    # ------------------------------------------------------------------
    # Phase 4: validation
    # ------------------------------------------------------------------

    async def _validate(self, job: CleanupJob, step: CleanupStep) -> bool:
        retries = self._config.validation_retries
        failed: list[dict] = []
        for attempt in range(1, retries + 1):
            checks = [
                {"name": f"{kind} registry empty", "success": count == 0, "value": count}
                for kind, count in self.registry.counts().items()
            ]
            checks.append(
                {"name": "memory usage sampled", "success": True, "value": self._sample_memory()}
            )
            step.details["checks"] = checks
            step.details["attempts"] = attempt

            failed = [c for c in checks if not c["success"]]
            if not failed:
                return True
            if attempt < retries:
                await asyncio.sleep(self._config.validation_retry_delay)

        job.warnings.append(f"{len(failed)} validation check(s) failed")
        logger.warning(
            "Resource release validation failed after %d attempt(s): %s",
            retries,
            [c["name"] for c in failed],
            extra={"cycle_id": job.cycle_id, "phase": VALIDATION_PHASE},
        )
        return False

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        return {
            **self._metrics,
            "is_running": self._running,
            "history_size": len(self._history),
            "registered": self.registry.counts(),
            "preserved_results": len(self._preserved),
        }
