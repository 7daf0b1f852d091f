"""Typed tuning profiles for the interval scheduler and the cleanup pipeline.

Durations in ``IntervalProfile`` are milliseconds; durations in
``CleanupConfig`` are seconds, matching ``asyncio`` timeouts.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class Range(BaseModel):
    """Inclusive numeric range ``[min, max]``."""

    min: int
    max: int

    @model_validator(mode="after")
    def _check_order(self) -> "Range":
        if self.min > self.max:
            raise ValueError(f"range min ({self.min}) exceeds max ({self.max})")
        return self


class IntervalProfile(BaseModel):
    """Cadence model for the delay between consecutive tasks."""

    base_interval: Range = Range(min=3000, max=12000)
    floor_ms: int = Field(default=1000, ge=0)

    enable_jitter: bool = True
    jitter: Range = Range(min=-1000, max=1000)

    enable_bursts: bool = True
    burst_probability: float = Field(default=0.1, ge=0.0, le=1.0)
    burst_length: Range = Range(min=3, max=7)
    burst_interval: Range = Range(min=1000, max=3000)

    enable_pauses: bool = True
    pause_probability: float = Field(default=0.15, ge=0.0, le=1.0)
    pause_range: Range = Range(min=15000, max=45000)

    @model_validator(mode="after")
    def _check_burst_length(self) -> "IntervalProfile":
        if self.burst_length.min < 1:
            raise ValueError("burst_length.min must be at least 1")
        return self


class CleanupConfig(BaseModel):
    """Timeouts and knobs for the post-cycle cleanup pipeline."""

    # Browser termination
    browser_close_timeout: float = Field(default=30.0, gt=0)
    browser_verification_retries: int = Field(default=3, ge=1)
    browser_verification_delay: float = Field(default=1.0, ge=0)
    browser_phase_timeout: float = Field(default=120.0, gt=0)

    # Memory release
    memory_release_timeout: float = Field(default=25.0, gt=0)
    gc_iterations: int = Field(default=3, ge=0)
    gc_delay: float = Field(default=1.0, ge=0)
    memory_leak_threshold: int = Field(default=50 * 1024 * 1024, ge=0)

    # Files and sessions
    temp_file_cleanup_timeout: float = Field(default=20.0, gt=0)
    preserve_results: bool = True

    # Validation
    validation_timeout: float = Field(default=15.0, gt=0)
    validation_retries: int = Field(default=2, ge=1)
    validation_retry_delay: float = Field(default=1.0, ge=0)

    # Queueing / history
    continue_on_error: bool = True
    queue_timeout: float = Field(default=30.0, gt=0)
    queue_poll_interval: float = Field(default=0.1, gt=0)
    history_size: int = Field(default=50, ge=1)
