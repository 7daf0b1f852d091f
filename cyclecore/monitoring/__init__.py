"""Event bus and memory monitoring."""

from cyclecore.monitoring.events import (
    CleanupCompleted,
    Event,
    EventBus,
    LeakDetected,
    MemoryThresholdExceeded,
    ProxyDeactivated,
    ProxyReactivated,
    log_events,
)
from cyclecore.monitoring.memory_guard import MemoryGuard, MemoryReading

__all__ = [
    "CleanupCompleted",
    "Event",
    "EventBus",
    "LeakDetected",
    "MemoryGuard",
    "MemoryReading",
    "MemoryThresholdExceeded",
    "ProxyDeactivated",
    "ProxyReactivated",
    "log_events",
]
