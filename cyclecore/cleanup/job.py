"""Cleanup job records, one per pipeline run, archived in bounded history."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CleanupStep:
    """Outcome of one pipeline phase."""

    name: str
    started_at: datetime = field(default_factory=_now)
    duration_ms: float = 0.0
    success: bool = False
    errors: list[dict] = field(default_factory=list)
    details: dict = field(default_factory=dict)


@dataclass
class CleanupMetrics:
    browsers_closed: int = 0
    browsers_force_killed: int = 0
    memory_refs_released: int = 0
    temp_files_removed: int = 0
    sessions_released: int = 0
    memory_freed_bytes: int = 0
    error_count: int = 0


@dataclass
class CleanupJob:
    """Append-only log of a single cleanup run."""

    cycle_id: str
    id: str = field(default_factory=lambda: f"cleanup-{uuid4().hex[:12]}")
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    duration_ms: float = 0.0
    steps: list[CleanupStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    metrics: CleanupMetrics = field(default_factory=CleanupMetrics)
    success: bool = False

    def add_error(self, step: str, error: str, **context: object) -> None:
        self.errors.append({"step": step, "error": error, **context})
        self.metrics.error_count += 1

    def step(self, name: str) -> CleanupStep | None:
        return next((s for s in self.steps if s.name == name), None)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        for step in data["steps"]:
            step["started_at"] = step["started_at"].isoformat()
        return data
