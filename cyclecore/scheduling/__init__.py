"""Task generation, cadence and the cycle runner."""

from cyclecore.scheduling.executor import HttpTaskExecutor, TaskExecutor, build_search_url
from cyclecore.scheduling.generator import SearchSpaceGenerator
from cyclecore.scheduling.interval import IntervalScheduler
from cyclecore.scheduling.runner import CycleRunner
from cyclecore.scheduling.types import SearchTask, TaskOutcome

__all__ = [
    "CycleRunner",
    "HttpTaskExecutor",
    "IntervalScheduler",
    "SearchSpaceGenerator",
    "SearchTask",
    "TaskExecutor",
    "TaskOutcome",
    "build_search_url",
]
