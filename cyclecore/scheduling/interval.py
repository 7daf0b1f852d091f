"""Organic inter-task interval scheduler.

Each call to ``next_delay_ms`` decides afresh, in this order:

1. outside a burst, maybe start one (``burst_probability``);
2. inside a burst, consume one unit and return a short burst interval;
3. otherwise maybe take a long pause (``pause_probability``);
4. otherwise return a base interval, optionally jittered.

Every result is floored at ``floor_ms``. The only state carried between
calls is ``in_burst`` and ``burst_remaining``.
"""

from __future__ import annotations

import logging
import random

from cyclecore.config.profiles import IntervalProfile, Range

logger = logging.getLogger(__name__)


class IntervalScheduler:
    """Computes the delay before the next task."""

    def __init__(
        self,
        profile: IntervalProfile | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._profile = profile or IntervalProfile()
        self._rng = rng or random.Random()
        self.in_burst: bool = False
        self.burst_remaining: int = 0

    @property
    def profile(self) -> IntervalProfile:
        return self._profile

    def _draw(self, bounds: Range) -> int:
        return self._rng.randint(bounds.min, bounds.max)

    def _floor(self, value: int) -> int:
        return max(self._profile.floor_ms, value)

    def next_delay_ms(self) -> int:
        """Return the delay, in milliseconds, before the next task."""
        profile = self._profile

        if (
            not self.in_burst
            and profile.enable_bursts
            and self._rng.random() < profile.burst_probability
        ):
            self.in_burst = True
            self.burst_remaining = self._draw(profile.burst_length)
            logger.info("Entering burst mode: %d tasks", self.burst_remaining)

        if self.in_burst and self.burst_remaining > 0:
            self.burst_remaining -= 1
            if self.burst_remaining == 0:
                self.in_burst = False
                logger.debug("Burst mode completed")
            return self._floor(self._draw(profile.burst_interval))

        if profile.enable_pauses and self._rng.random() < profile.pause_probability:
            pause = self._floor(self._draw(profile.pause_range))
            logger.info("Taking organic pause: %.1fs", pause / 1000)
            return pause

        interval = self._draw(profile.base_interval)
        if profile.enable_jitter:
            interval += self._draw(profile.jitter)
        return self._floor(interval)

    def reset(self) -> None:
        self.in_burst = False
        self.burst_remaining = 0

    def get_stats(self) -> dict:
        return {
            "in_burst": self.in_burst,
            "burst_remaining": self.burst_remaining,
        }
