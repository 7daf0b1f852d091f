"""Executes search tasks in a real browser page."""

from __future__ import annotations

import logging
import time

from cyclecore.browser.pool import BrowserPool
from cyclecore.scheduling.executor import build_search_url
from cyclecore.scheduling.types import SearchTask, TaskOutcome

logger = logging.getLogger(__name__)


class BrowserTaskExecutor:
    """Loads the task's search page through the task's assigned proxy."""

    def __init__(self, browser_pool: BrowserPool, *, navigation_timeout_ms: float = 30000) -> None:
        self._pool = browser_pool
        self._navigation_timeout_ms = navigation_timeout_ms

    async def execute(self, task: SearchTask) -> TaskOutcome:
        url = build_search_url(task)
        instance = await self._pool.acquire(task.proxy)
        started = time.monotonic()
        try:
            page = await instance.new_page(task.device)
            try:
                response = await page.goto(url, timeout=self._navigation_timeout_ms)
            finally:
                await page.context.close()
        finally:
            await self._pool.release(instance)

        elapsed_ms = (time.monotonic() - started) * 1000
        if response is None:
            return TaskOutcome(success=False, duration_ms=elapsed_ms, error="No response")
        success = response.status < 400
        return TaskOutcome(
            success=success,
            duration_ms=elapsed_ms,
            error=None if success else f"HTTP {response.status}",
        )
