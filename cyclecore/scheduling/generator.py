"""Lazy search space generator with a bounded, shuffled buffer.

The cross product keyword × location × device × platform is never
materialised. A Python generator walks it keyword by keyword, drawing a fresh
location sample per keyword, a fresh device sample per location and a
platform selection per device, so memory stays proportional to the buffer.

The size of one cycle is known analytically:

    total = Σ_keywords  loc_sample × device_sample × platform_sample

It is only used to report progress and to detect cycle boundaries.
"""

from __future__ import annotations

import logging
import random
from collections import deque
from collections.abc import Iterator

from cyclecore.config.search_space import DeviceProfile, Platform, SearchSpace
from cyclecore.scheduling.types import SearchTask

logger = logging.getLogger(__name__)


class SearchSpaceGenerator:
    """Serves an endless, cyclically repeating stream of search tasks.

    Parameters
    ----------
    space:
        The cross-product definition.
    buffer_size:
        Maximum number of tasks pulled from the lazy walk at once.
    shuffle:
        Shuffle each buffer before serving it.
    """

    def __init__(
        self,
        space: SearchSpace,
        *,
        buffer_size: int = 100,
        shuffle: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._space = space
        self._buffer_size = buffer_size
        self._shuffle = shuffle
        self._rng = rng or random.Random()

        self._cycle = 0
        self._emitted_in_cycle = 0
        self._total_emitted = 0
        self._iterator: Iterator[SearchTask] = self._walk(self._cycle)
        self._buffer: deque[SearchTask] = deque()

    # ------------------------------------------------------------------
    # Analytic size
    # ------------------------------------------------------------------

    @property
    def total_combinations(self) -> int:
        """Number of tasks in one full cycle."""
        per_keyword = (
            self._space.effective_location_sample
            * self._space.effective_device_sample
            * self._space.effective_platform_sample
        )
        return per_keyword * len(self._space.keywords)

    # ------------------------------------------------------------------
    # Lazy walk
    # ------------------------------------------------------------------

    def _walk(self, cycle: int) -> Iterator[SearchTask]:
        space = self._space
        for keyword in space.keywords:
            locations = self._rng.sample(space.locations, space.effective_location_sample)
            for location in locations:
                devices = self._rng.sample(space.devices, space.effective_device_sample)
                for device in devices:
                    for platform in self._select_platforms(device):
                        yield SearchTask(
                            keyword=keyword,
                            platform=platform,
                            location=location,
                            device=device,
                            cycle=cycle,
                        )

    def _select_platforms(self, device: DeviceProfile) -> list[Platform]:
        """Pick platforms for *device*, compatible ones first by priority.

        Always returns exactly ``effective_platform_sample`` platforms; when
        too few support the device the remainder is filled from the other
        enabled platforms.
        """
        count = self._space.effective_platform_sample
        enabled = self._space.enabled_platforms
        compatible = [p for p in enabled if p.supports(device.device_type)]
        others = [p for p in enabled if not p.supports(device.device_type)]

        selected = self._weighted_sample(compatible, min(count, len(compatible)))
        if len(selected) < count:
            selected += self._weighted_sample(others, count - len(selected))
        return selected

    def _weighted_sample(self, platforms: list[Platform], count: int) -> list[Platform]:
        """Draw *count* distinct platforms, weighting by priority."""
        pool = list(platforms)
        chosen: list[Platform] = []
        while pool and len(chosen) < count:
            total = sum(p.priority for p in pool)
            if total <= 0:
                pick = self._rng.choice(pool)
            else:
                threshold = self._rng.random() * total
                cumulative = 0.0
                pick = pool[-1]
                for platform in pool:
                    cumulative += platform.priority
                    if threshold < cumulative:
                        pick = platform
                        break
            chosen.append(pick)
            pool.remove(pick)
        return chosen

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------

    def _restart(self) -> None:
        self._cycle += 1
        self._emitted_in_cycle = 0
        self._iterator = self._walk(self._cycle)
        logger.info("Search space cycle %d started (%d tasks)", self._cycle, self.total_combinations)

    def next_buffer(self) -> list[SearchTask]:
        """Pull and shuffle the next window of tasks.

        A buffer never spans two cycles; once a cycle is exhausted the next
        call transparently starts a new one.
        """
        if self._emitted_in_cycle >= self.total_combinations:
            self._restart()

        remaining = self.total_combinations - self._emitted_in_cycle
        window: list[SearchTask] = []
        for task in self._iterator:
            window.append(task)
            if len(window) >= min(self._buffer_size, remaining):
                break

        if not window:
            # Walk ended early; start over rather than return nothing
            self._restart()
            return self.next_buffer()

        self._emitted_in_cycle += len(window)
        self._total_emitted += len(window)
        if self._shuffle:
            self._rng.shuffle(window)

        logger.debug(
            "Buffered %d tasks (cycle %d: %d/%d)",
            len(window),
            self._cycle,
            self._emitted_in_cycle,
            self.total_combinations,
        )
        return window

    def next_task(self) -> SearchTask:
        """Serve a single task, refilling the buffer as needed."""
        if not self._buffer:
            self._buffer.extend(self.next_buffer())
        return self._buffer.popleft()

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def cycle_complete(self) -> bool:
        """``True`` once every task of the current cycle has been pulled."""
        return self._emitted_in_cycle >= self.total_combinations

    def get_stats(self) -> dict:
        return {
            "cycle": self._cycle,
            "total_combinations": self.total_combinations,
            "emitted_in_cycle": self._emitted_in_cycle,
            "total_emitted": self._total_emitted,
            "buffer_size": self._buffer_size,
            "buffered": len(self._buffer),
        }
