"""Task models produced by the generator and consumed by the runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from cyclecore.config.search_space import DeviceProfile, Location, Platform

if TYPE_CHECKING:
    from cyclecore.proxy.types import ProxyRecord


@dataclass
class TaskOutcome:
    """Result annotation attached to a task after execution."""

    success: bool
    duration_ms: float = 0.0
    error: str | None = None


@dataclass
class SearchTask:
    """One (keyword, location, device, platform) combination to execute.

    The proxy is assigned at most once; the outcome is the only field
    written after execution.
    """

    keyword: str
    platform: Platform
    location: Location
    device: DeviceProfile
    cycle: int = 0
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    proxy: "ProxyRecord | None" = None
    outcome: TaskOutcome | None = None

    @property
    def combination(self) -> tuple[str, str, str, str]:
        """Identity of the combination, ignoring id and timestamps."""
        return (
            self.keyword,
            f"{self.location.country}/{self.location.city}",
            self.device.name,
            self.platform.name,
        )

    def assign_proxy(self, proxy: "ProxyRecord") -> None:
        if self.proxy is not None:
            raise ValueError(f"Task {self.id} already has proxy {self.proxy.id}")
        self.proxy = proxy

    def record_outcome(self, outcome: TaskOutcome) -> None:
        if self.outcome is not None:
            raise ValueError(f"Task {self.id} already has an outcome")
        self.outcome = outcome
