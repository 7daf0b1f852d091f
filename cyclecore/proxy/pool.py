"""Proxy pool with pluggable rotation, reliability scoring and timed deactivation.

Records are built from configured candidates and probed once at startup.
Selection filters active records by device compatibility, target country and
a reliability floor, relaxing to the whole active set when the filters leave
nothing, and then applies the configured rotation strategy.

Outcome reports nudge reliability asymmetrically (failures cost more than
successes earn). A record whose failure count reaches the deactivation
threshold leaves rotation and comes back, with its failure count reset, once
the recovery delay has elapsed.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable

import httpx

from cyclecore.config.proxy_sources import ProxyCandidate, ProxyType
from cyclecore.config.search_space import DeviceType
from cyclecore.middleware.error_handler import PoolExhaustedError
from cyclecore.monitoring.events import EventBus, ProxyDeactivated, ProxyReactivated
from cyclecore.proxy.types import ProxyRecord, RotationStrategy

logger = logging.getLogger(__name__)

# Weighted-random bonuses
_RECENCY_BONUS_CAP = 1.0
_RECENCY_BONUS_WINDOW_SECONDS = 3600.0
_TYPE_BONUS: dict[ProxyType, float] = {
    ProxyType.RESIDENTIAL: 0.5,
    ProxyType.MOBILE: 0.3,
}


class ProxyPool:
    """Manages proxy records with rotation strategies and reliability tracking."""

    def __init__(
        self,
        *,
        strategy: RotationStrategy | str = RotationStrategy.WEIGHTED_RANDOM,
        deactivation_threshold: int = 5,
        recovery_seconds: float = 300.0,
        min_reliability: float = 0.5,
        success_step: float = 0.01,
        failure_step: float = 0.05,
        probe_url: str = "https://httpbin.org/ip",
        probe_timeout_seconds: float = 10.0,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
        event_bus: EventBus | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._strategy = RotationStrategy(strategy)
        self._deactivation_threshold = deactivation_threshold
        self._recovery_seconds = recovery_seconds
        self._min_reliability = min_reliability
        self._success_step = success_step
        self._failure_step = failure_step
        self._probe_url = probe_url
        self._probe_timeout = probe_timeout_seconds
        self._client_factory = client_factory
        self._events = event_bus
        self._rng = rng or random.Random()

        self._records: dict[str, ProxyRecord] = {}
        self._rr_index: int = 0
        self._rotations: int = 0
        self._geo: dict[tuple[str | None, str | None], list[ProxyRecord]] = {}

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(
        self, candidates: list[ProxyCandidate], *, probe: bool = True
    ) -> None:
        """Build records from *candidates* and probe each one concurrently.

        With ``probe=False`` every record starts active.
        """
        self._records = {}
        self._rr_index = 0
        self._rotations = 0

        for candidate in candidates:
            record = ProxyRecord.from_candidate(candidate)
            if record.id in self._records:
                logger.warning("Duplicate proxy candidate ignored: %s", record.redacted_url)
                continue
            self._records[record.id] = record

        records = list(self._records.values())
        if probe and records:
            results = await asyncio.gather(
                *(self._probe(record) for record in records),
                return_exceptions=True,
            )
            for record, result in zip(records, results):
                record.is_active = result is True
                if not record.is_active:
                    logger.warning("Proxy probe failed: %s", record.redacted_url)
        else:
            for record in records:
                record.is_active = True

        self._regroup()
        logger.info(
            "Proxy pool initialized: %d candidates, %d active, %d locations",
            len(records),
            self.active_count,
            len(self._geo),
        )

    async def _probe(self, record: ProxyRecord) -> bool:
        """Issue one lightweight request through *record*; ``True`` if it answers."""
        started = time.monotonic()
        try:
            async with self._client_factory(
                proxy=record.url,
                timeout=httpx.Timeout(self._probe_timeout),
            ) as client:
                response = await client.get(self._probe_url)
        except Exception:  # noqa: BLE001
            logger.debug("Probe error for proxy %s", record.redacted_url, exc_info=True)
            record.reliability = max(0.0, record.reliability - 0.1)
            return False

        if response.status_code >= 500:
            return False
        record.avg_response_ms = (time.monotonic() - started) * 1000
        return True

    def _regroup(self) -> None:
        """Group active records by (country, city)."""
        self._geo = {}
        for record in self._records.values():
            if record.is_active:
                self._geo.setdefault(record.location_key, []).append(record)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def next(
        self,
        device_type: DeviceType | str = DeviceType.DESKTOP,
        target_country: str | None = None,
    ) -> ProxyRecord:
        """Select the next proxy for a task.

        Raises ``PoolExhaustedError`` when no active record exists.
        """
        self.reactivate_due()

        active = [r for r in self._records.values() if r.is_active]
        if not active:
            raise PoolExhaustedError()

        eligible = [
            r
            for r in active
            if r.supports_device(device_type)
            and (target_country is None or r.country == target_country)
            and r.reliability >= self._min_reliability
        ]
        if not eligible:
            logger.debug(
                "No proxy matches device=%s country=%s — relaxing to all active",
                device_type,
                target_country,
            )
            eligible = active

        record = self._select(eligible)
        record.last_used = time.monotonic()
        record.usage_count += 1
        self._rotations += 1
        logger.debug(
            "Selected proxy %s (%s/%s, reliability=%.2f)",
            record.redacted_url,
            record.country,
            record.city,
            record.reliability,
        )
        return record

    def _select(self, eligible: list[ProxyRecord]) -> ProxyRecord:
        if self._strategy == RotationStrategy.ROUND_ROBIN:
            record = eligible[self._rr_index % len(eligible)]
            self._rr_index = (self._rr_index + 1) % len(eligible)
            return record
        if self._strategy == RotationStrategy.LEAST_USED:
            return min(eligible, key=lambda r: r.usage_count)
        if self._strategy == RotationStrategy.BEST_RELIABILITY:
            return max(eligible, key=lambda r: r.reliability)
        return self._select_weighted(eligible)

    def weight(self, record: ProxyRecord, now: float | None = None) -> float:
        """Weighted-random weight: reliability + recency bonus + type bonus."""
        now = time.monotonic() if now is None else now
        if record.last_used is None:
            recency = _RECENCY_BONUS_CAP
        else:
            recency = min((now - record.last_used) / _RECENCY_BONUS_WINDOW_SECONDS, _RECENCY_BONUS_CAP)
        return record.reliability + recency + _TYPE_BONUS.get(record.proxy_type, 0.0)

    def _select_weighted(self, eligible: list[ProxyRecord]) -> ProxyRecord:
        now = time.monotonic()
        weights = [self.weight(r, now) for r in eligible]
        total = sum(weights)
        if total <= 0:
            return eligible[0]

        threshold = self._rng.random() * total
        cumulative = 0.0
        for record, weight in zip(eligible, weights):
            cumulative += weight
            if threshold < cumulative:
                return record
        return eligible[-1]

    # ------------------------------------------------------------------
    # Outcome feedback
    # ------------------------------------------------------------------

    def report_result(self, proxy_id: str, success: bool, response_time_ms: float = 0.0) -> None:
        """Fold a task outcome into the record's reliability and counters."""
        record = self._records.get(proxy_id)
        if record is None:
            logger.debug("Result reported for unknown proxy id %s", proxy_id)
            return

        if success:
            record.success_count += 1
            if record.avg_response_ms == 0.0:
                record.avg_response_ms = float(response_time_ms)
            else:
                record.avg_response_ms = (record.avg_response_ms + response_time_ms) / 2
            record.reliability = min(1.0, record.reliability + self._success_step)
            return

        record.failure_count += 1
        record.reliability = max(0.0, record.reliability - self._failure_step)
        if record.is_active and record.failure_count >= self._deactivation_threshold:
            self._deactivate(record)

    def _deactivate(self, record: ProxyRecord) -> None:
        record.is_active = False
        record.reactivate_at = time.monotonic() + self._recovery_seconds
        self._regroup()
        logger.warning(
            "Proxy deactivated: %s (failures: %d, recovery in %.0fs)",
            record.redacted_url,
            record.failure_count,
            self._recovery_seconds,
        )
        if self._events is not None:
            self._events.publish(
                ProxyDeactivated(
                    proxy_id=record.id,
                    failure_count=record.failure_count,
                    reactivate_in_seconds=self._recovery_seconds,
                )
            )

    def reactivate_due(self) -> list[ProxyRecord]:
        """Reactivate every record whose recovery delay has elapsed."""
        now = time.monotonic()
        restored: list[ProxyRecord] = []
        for record in self._records.values():
            if record.is_active or record.reactivate_at is None:
                continue
            if now >= record.reactivate_at:
                record.is_active = True
                record.failure_count = 0
                record.reactivate_at = None
                restored.append(record)
                logger.info("Proxy reactivated: %s", record.redacted_url)
                if self._events is not None:
                    self._events.publish(ProxyReactivated(proxy_id=record.id))
        if restored:
            self._regroup()
        return restored

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    # Readers apply due reactivations so a recovered record is visible
    # without waiting for the next selection.

    def get(self, proxy_id: str) -> ProxyRecord | None:
        self.reactivate_due()
        return self._records.get(proxy_id)

    @property
    def records(self) -> list[ProxyRecord]:
        self.reactivate_due()
        return list(self._records.values())

    @property
    def active_count(self) -> int:
        self.reactivate_due()
        return sum(1 for r in self._records.values() if r.is_active)

    @property
    def geo_distribution(self) -> dict[tuple[str | None, str | None], list[ProxyRecord]]:
        return dict(self._geo)

    def get_stats(self) -> dict:
        """Return pool statistics for the health endpoint."""
        self.reactivate_due()
        records = list(self._records.values())
        active = [r for r in records if r.is_active]
        avg_reliability = (
            sum(r.reliability for r in active) / len(active) if active else 0.0
        )

        return {
            "total": len(records),
            "active": len(active),
            "inactive": len(records) - len(active),
            "strategy": self._strategy.value,
            "rotations": self._rotations,
            "average_reliability": round(avg_reliability, 4),
            "locations": [f"{country}-{city}" for country, city in self._geo],
            "proxies": [
                {
                    "id": r.id,
                    "url": r.redacted_url,
                    "type": r.proxy_type.value,
                    "country": r.country,
                    "city": r.city,
                    "is_active": r.is_active,
                    "reliability": round(r.reliability, 4),
                    "success_count": r.success_count,
                    "failure_count": r.failure_count,
                    "usage_count": r.usage_count,
                    "avg_response_ms": round(r.avg_response_ms, 2),
                }
                for r in records
            ],
        }
