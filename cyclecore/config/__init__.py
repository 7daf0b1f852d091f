"""Configuration module: settings, tuning profiles, search space and proxy sources."""

from cyclecore.config.profiles import CleanupConfig, IntervalProfile, Range
from cyclecore.config.proxy_sources import (
    ProxyCandidate,
    ProxyType,
    collect_candidates,
    load_proxy_candidates,
)
from cyclecore.config.search_space import (
    DEFAULT_SEARCH_SPACE,
    DeviceProfile,
    DeviceType,
    Location,
    Platform,
    SearchSpace,
    load_search_space,
)
from cyclecore.config.settings import CycleSettings

__all__ = [
    "CleanupConfig",
    "CycleSettings",
    "DEFAULT_SEARCH_SPACE",
    "DeviceProfile",
    "DeviceType",
    "IntervalProfile",
    "Location",
    "Platform",
    "ProxyCandidate",
    "ProxyType",
    "Range",
    "SearchSpace",
    "collect_candidates",
    "load_proxy_candidates",
    "load_search_space",
]
