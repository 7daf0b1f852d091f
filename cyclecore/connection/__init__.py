"""Egress path selection: proxied vs. direct with failover and health probing."""

from cyclecore.connection.manager import (
    ConnectionManager,
    ConnectionMode,
    ConnectionStats,
    EgressPath,
    HealthSnapshot,
)

__all__ = [
    "ConnectionManager",
    "ConnectionMode",
    "ConnectionStats",
    "EgressPath",
    "HealthSnapshot",
]
