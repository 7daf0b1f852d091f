"""Error hierarchy and exception handlers."""

from cyclecore.middleware.error_handler import (
    CleanupPhaseError,
    CleanupTimeoutError,
    ConnectionFailureError,
    CycleCoreError,
    LeakWarning,
    PoolExhaustedError,
    register_error_handlers,
)

__all__ = [
    "CleanupPhaseError",
    "CleanupTimeoutError",
    "ConnectionFailureError",
    "CycleCoreError",
    "LeakWarning",
    "PoolExhaustedError",
    "register_error_handlers",
]
