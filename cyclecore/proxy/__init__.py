"""Proxy pool package: rotation strategies, reliability scoring, timed deactivation."""

from cyclecore.proxy.pool import ProxyPool
from cyclecore.proxy.types import ProxyRecord, RotationStrategy

__all__ = ["ProxyPool", "ProxyRecord", "RotationStrategy"]
