"""Task executors: the seam between the cycle runner and the outside world.

An executor receives a fully assigned :class:`SearchTask` and returns a
:class:`TaskOutcome`. It may raise; the runner converts exceptions and
timeouts into failed outcomes.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import urlencode

from cyclecore.scheduling.types import SearchTask, TaskOutcome

if TYPE_CHECKING:
    from cyclecore.connection.manager import ConnectionManager

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskExecutor(Protocol):
    async def execute(self, task: SearchTask) -> TaskOutcome: ...


def build_search_url(task: SearchTask) -> str:
    """Platform search URL for the task's keyword."""
    platform = task.platform
    separator = "&" if "?" in platform.base_url else "?"
    return f"{platform.base_url}{separator}{urlencode({platform.query_param: task.keyword})}"


class HttpTaskExecutor:
    """Issues the task's search request through the connection manager.

    The connection manager picks the egress path and reports proxy outcomes
    itself, so tasks run by this executor are not pre-assigned a proxy.
    """

    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection

    async def execute(self, task: SearchTask) -> TaskOutcome:
        url = build_search_url(task)
        started = time.monotonic()
        response = await self._connection.request(
            url,
            device_type=task.device.device_type,
            country=task.location.country,
        )
        elapsed_ms = (time.monotonic() - started) * 1000
        success = response.status_code < 400
        return TaskOutcome(
            success=success,
            duration_ms=elapsed_ms,
            error=None if success else f"HTTP {response.status_code}",
        )
