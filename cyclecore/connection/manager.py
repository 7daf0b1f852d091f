"""Connection manager: proxied vs. direct egress with failover.

In ``auto`` mode the preferred path is tried first and, when fallback is
enabled, the other path second; each path has its own retry budget. A
background health loop probes both paths and its last result only advises
the order, it never blocks a path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx

from cyclecore.config.search_space import DeviceType
from cyclecore.middleware.error_handler import ConnectionFailureError, PoolExhaustedError
from cyclecore.proxy.pool import ProxyPool

logger = logging.getLogger(__name__)


class ConnectionMode(str, Enum):
    AUTO = "auto"
    PROXIED_ONLY = "proxied-only"
    DIRECT_ONLY = "direct-only"


class EgressPath(str, Enum):
    PROXIED = "proxied"
    DIRECT = "direct"


@dataclass
class ConnectionStats:
    """Per-path outcome counters and running response-time average."""

    proxied_successes: int = 0
    proxied_failures: int = 0
    direct_successes: int = 0
    direct_failures: int = 0
    total_requests: int = 0
    average_response_ms: float = 0.0


@dataclass
class HealthSnapshot:
    """Result of one probe of both egress paths."""

    direct: bool = False
    proxied: bool = False
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager:
    """Chooses the egress path per request and falls back when it fails.

    Parameters
    ----------
    proxy_pool:
        Pool supplying proxy records for the proxied path.
    mode:
        ``auto``, ``proxied-only`` or ``direct-only``.
    prefer_proxy:
        In ``auto`` mode, try the proxied path first.
    enable_fallback:
        In ``auto`` mode, try the other path after the first one fails.
    client_factory:
        Callable building an ``httpx.AsyncClient``; receives ``proxy`` and
        ``timeout`` keyword arguments.
    """

    def __init__(
        self,
        proxy_pool: ProxyPool | None,
        *,
        mode: ConnectionMode | str = ConnectionMode.AUTO,
        prefer_proxy: bool = True,
        enable_fallback: bool = True,
        max_proxy_retries: int = 3,
        max_direct_retries: int = 2,
        request_timeout_seconds: float = 30.0,
        retry_backoff_seconds: float = 1.0,
        health_check_interval_seconds: float = 300.0,
        probe_url: str = "https://httpbin.org/ip",
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self._pool = proxy_pool
        self._mode = ConnectionMode(mode)
        self._prefer_proxy = prefer_proxy
        self._enable_fallback = enable_fallback
        self._max_proxy_retries = max_proxy_retries
        self._max_direct_retries = max_direct_retries
        self._timeout = request_timeout_seconds
        self._backoff = retry_backoff_seconds
        self._health_interval = health_check_interval_seconds
        self._probe_url = probe_url
        self._client_factory = client_factory

        self._stats = ConnectionStats()
        self._completed = 0
        self._last_health: HealthSnapshot | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    @property
    def mode(self) -> ConnectionMode:
        return self._mode

    def set_mode(self, mode: ConnectionMode | str) -> None:
        """Switch connection mode; raises ``ValueError`` for unknown modes."""
        self._mode = ConnectionMode(mode)
        logger.info("Connection mode set to: %s", self._mode.value)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        device_type: DeviceType | str = DeviceType.DESKTOP,
        country: str | None = None,
        **kwargs: object,
    ) -> httpx.Response:
        """Issue a request over the path(s) the current mode allows.

        Raises the path's own error in single-path modes and
        ``ConnectionFailureError`` when both paths fail in ``auto`` mode.
        """
        started = time.monotonic()
        self._stats.total_requests += 1

        if self._mode == ConnectionMode.PROXIED_ONLY:
            response = await self._attempt(EgressPath.PROXIED, url, method, device_type, country, kwargs)
        elif self._mode == ConnectionMode.DIRECT_ONLY:
            response = await self._attempt(EgressPath.DIRECT, url, method, device_type, country, kwargs)
        else:
            response = await self._auto_request(url, method, device_type, country, kwargs)

        self._update_average((time.monotonic() - started) * 1000)
        return response

    def _path_order(self) -> tuple[EgressPath, EgressPath]:
        proxied_first = self._prefer_proxy and self.proxy_available()
        health = self._last_health
        if health is not None:
            if proxied_first and not health.proxied and health.direct:
                proxied_first = False
            elif not proxied_first and not health.direct and health.proxied and self.proxy_available():
                proxied_first = True
        if proxied_first:
            return EgressPath.PROXIED, EgressPath.DIRECT
        return EgressPath.DIRECT, EgressPath.PROXIED

    async def _auto_request(
        self,
        url: str,
        method: str,
        device_type: DeviceType | str,
        country: str | None,
        kwargs: dict,
    ) -> httpx.Response:
        first, second = self._path_order()
        try:
            return await self._attempt(first, url, method, device_type, country, kwargs)
        except Exception as first_error:
            if not self._enable_fallback:
                raise
            logger.warning(
                "%s request failed, falling back to %s: %s",
                first.value,
                second.value,
                first_error,
            )
            try:
                return await self._attempt(second, url, method, device_type, country, kwargs)
            except Exception as second_error:
                errors = {first: first_error, second: second_error}
                raise ConnectionFailureError(
                    proxy_error=errors[EgressPath.PROXIED],
                    direct_error=errors[EgressPath.DIRECT],
                ) from second_error

    async def _attempt(
        self,
        path: EgressPath,
        url: str,
        method: str,
        device_type: DeviceType | str,
        country: str | None,
        kwargs: dict,
    ) -> httpx.Response:
        """Run one path with its retry budget, updating per-path counters."""
        try:
            if path == EgressPath.PROXIED:
                response = await self._proxied_request(url, method, device_type, country, kwargs)
            else:
                response = await self._direct_request(url, method, kwargs)
        except Exception:
            if path == EgressPath.PROXIED:
                self._stats.proxied_failures += 1
            else:
                self._stats.direct_failures += 1
            raise

        if path == EgressPath.PROXIED:
            self._stats.proxied_successes += 1
        else:
            self._stats.direct_successes += 1
        logger.debug("Request succeeded via %s connection", path.value)
        return response

    async def _proxied_request(
        self,
        url: str,
        method: str,
        device_type: DeviceType | str,
        country: str | None,
        kwargs: dict,
        max_attempts: int | None = None,
    ) -> httpx.Response:
        if self._pool is None:
            raise PoolExhaustedError("Proxy pool not available")

        attempts = max_attempts or self._max_proxy_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            # Exhaustion is final for this path
            record = self._pool.next(device_type, country)
            started = time.monotonic()
            try:
                response = await self._send(url, method, record.url, kwargs)
            except Exception as exc:
                elapsed_ms = (time.monotonic() - started) * 1000
                self._pool.report_result(record.id, False, elapsed_ms)
                last_error = exc
                logger.warning(
                    "Proxied attempt %d/%d via %s failed: %s",
                    attempt,
                    attempts,
                    record.redacted_url,
                    exc,
                )
                if attempt < attempts and self._backoff > 0:
                    await asyncio.sleep(self._backoff * attempt)
                continue

            self._pool.report_result(record.id, True, (time.monotonic() - started) * 1000)
            return response

        assert last_error is not None
        raise last_error

    async def _direct_request(
        self, url: str, method: str, kwargs: dict, max_attempts: int | None = None
    ) -> httpx.Response:
        attempts = max_attempts or self._max_direct_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._send(url, method, None, kwargs)
            except Exception as exc:
                last_error = exc
                logger.warning("Direct attempt %d/%d failed: %s", attempt, attempts, exc)
                if attempt < attempts and self._backoff > 0:
                    await asyncio.sleep(self._backoff * attempt)

        assert last_error is not None
        raise last_error

    async def _send(
        self, url: str, method: str, proxy_url: str | None, kwargs: dict
    ) -> httpx.Response:
        """Send one request; 5xx responses count as failures."""
        async with self._client_factory(
            proxy=proxy_url,
            timeout=httpx.Timeout(self._timeout),
        ) as client:
            response = await client.request(method, url, **kwargs)
        if response.status_code >= 500:
            raise httpx.HTTPStatusError(
                f"Server error {response.status_code} for {url}",
                request=response.request,
                response=response,
            )
        return response

    def proxy_available(self) -> bool:
        return self._pool is not None and self._pool.active_count > 0

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def perform_health_check(self) -> HealthSnapshot:
        """Probe both paths once against the probe URL."""
        snapshot = HealthSnapshot()

        try:
            await self._direct_request(self._probe_url, "GET", {}, max_attempts=1)
            snapshot.direct = True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Direct connection unhealthy: %s", exc)

        if self._pool is not None:
            self._pool.reactivate_due()
            try:
                await self._proxied_request(
                    self._probe_url, "GET", DeviceType.DESKTOP, None, {}, max_attempts=1
                )
                snapshot.proxied = True
            except Exception as exc:  # noqa: BLE001
                logger.warning("Proxied connection unhealthy: %s", exc)

        self._last_health = snapshot
        logger.info(
            "Connection health: direct=%s proxied=%s", snapshot.direct, snapshot.proxied
        )
        return snapshot

    async def health_check_loop(self) -> None:
        """Run ``perform_health_check`` every interval until stopped."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._health_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.perform_health_check()
            except Exception:
                logger.exception("Connection health check failed")

    def start_health_checks(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            logger.warning("Health checks already running — skipping")
            return
        self._stop = asyncio.Event()
        self._health_task = asyncio.create_task(
            self.health_check_loop(), name="connection-health-check"
        )
        logger.info("Started connection health checks (interval=%.0fs)", self._health_interval)

    async def stop_health_checks(self) -> None:
        self._stop.set()
        if self._health_task is not None:
            await self._health_task
            self._health_task = None
            logger.info("Stopped connection health checks")

    async def close(self) -> None:
        await self.stop_health_checks()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _update_average(self, response_ms: float) -> None:
        self._completed += 1
        current = self._stats.average_response_ms
        self._stats.average_response_ms = (
            (current * (self._completed - 1)) + response_ms
        ) / self._completed

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    @property
    def last_health(self) -> HealthSnapshot | None:
        return self._last_health

    def get_stats(self) -> dict:
        s = self._stats
        successes = s.proxied_successes + s.direct_successes
        failures = s.proxied_failures + s.direct_failures
        attempts = successes + failures
        health = self._last_health
        return {
            **asdict(s),
            "mode": self._mode.value,
            "success_rate": round(successes / attempts, 4) if attempts else 0.0,
            "proxy_available": self.proxy_available(),
            "last_health": (
                {
                    "direct": health.direct,
                    "proxied": health.proxied,
                    "checked_at": health.checked_at.isoformat(),
                }
                if health
                else None
            ),
        }

    def reset_stats(self) -> None:
        self._stats = ConnectionStats()
        self._completed = 0
        logger.info("Connection statistics reset")
