"""Unit tests for the connection manager."""

import asyncio
import time

import httpx
import pytest

from conftest import make_candidates, mock_client_factory
from cyclecore.connection.manager import ConnectionManager, ConnectionMode, HealthSnapshot
from cyclecore.middleware.error_handler import ConnectionFailureError, PoolExhaustedError
from cyclecore.proxy.pool import ProxyPool


class Recorder:
    """Handler recording which path each request took."""

    def __init__(self, *, proxy_status: int | None = 200, direct_status: int | None = 200) -> None:
        self.proxy_status = proxy_status
        self.direct_status = direct_status
        self.calls: list[str | None] = []

    def __call__(self, request: httpx.Request, proxy: str | None) -> httpx.Response:
        self.calls.append(proxy)
        status = self.proxy_status if proxy else self.direct_status
        if status is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status)

    @property
    def proxied_calls(self) -> int:
        return sum(1 for c in self.calls if c)

    @property
    def direct_calls(self) -> int:
        return sum(1 for c in self.calls if c is None)


async def _manager(recorder: Recorder, *, proxies: int = 2, **kwargs) -> ConnectionManager:
    pool = ProxyPool(strategy="round_robin", deactivation_threshold=100)
    await pool.initialize(make_candidates(proxies), probe=False)
    kwargs.setdefault("retry_backoff_seconds", 0)
    return ConnectionManager(pool, client_factory=mock_client_factory(recorder), **kwargs)


class TestModes:
    """Test mode parsing and switching."""

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValueError):
            ConnectionManager(None, mode="sideways")

    def test_set_mode(self):
        manager = ConnectionManager(None)
        manager.set_mode("direct-only")
        assert manager.mode == ConnectionMode.DIRECT_ONLY
        with pytest.raises(ValueError):
            manager.set_mode("nope")

    @pytest.mark.asyncio
    async def test_direct_only_never_uses_proxy(self):
        recorder = Recorder()
        manager = await _manager(recorder, mode="direct-only")
        response = await manager.request("https://example.com")
        assert response.status_code == 200
        assert recorder.calls == [None]
        assert manager.stats.direct_successes == 1

    @pytest.mark.asyncio
    async def test_proxied_only_without_pool_raises(self):
        manager = ConnectionManager(None, mode="proxied-only")
        with pytest.raises(PoolExhaustedError):
            await manager.request("https://example.com")


class TestAutoMode:
    """Test failover behaviour in auto mode."""

    @pytest.mark.asyncio
    async def test_prefers_proxy(self):
        recorder = Recorder()
        manager = await _manager(recorder)
        await manager.request("https://example.com")
        assert recorder.proxied_calls == 1
        assert recorder.direct_calls == 0
        assert manager.stats.proxied_successes == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_direct_after_proxy_retries(self):
        recorder = Recorder(proxy_status=None)
        manager = await _manager(recorder, max_proxy_retries=3)
        response = await manager.request("https://example.com")
        assert response.status_code == 200
        assert recorder.proxied_calls == 3
        assert recorder.direct_calls == 1
        assert manager.stats.proxied_failures == 1
        assert manager.stats.direct_successes == 1

    @pytest.mark.asyncio
    async def test_proxy_5xx_counts_as_failure(self):
        recorder = Recorder(proxy_status=503)
        manager = await _manager(recorder, max_proxy_retries=2)
        await manager.request("https://example.com")
        assert recorder.proxied_calls == 2
        assert recorder.direct_calls == 1

    @pytest.mark.asyncio
    async def test_proxy_failures_reported_to_pool(self):
        recorder = Recorder(proxy_status=None)
        manager = await _manager(recorder, max_proxy_retries=2)
        await manager.request("https://example.com")
        failures = sum(r.failure_count for r in manager._pool.records)
        assert failures == 2

    @pytest.mark.asyncio
    async def test_both_paths_fail_carries_both_causes(self):
        recorder = Recorder(proxy_status=None, direct_status=None)
        manager = await _manager(recorder, max_proxy_retries=1, max_direct_retries=2)
        with pytest.raises(ConnectionFailureError) as exc_info:
            await manager.request("https://example.com")

        err = exc_info.value
        assert isinstance(err.proxy_error, httpx.ConnectError)
        assert isinstance(err.direct_error, httpx.ConnectError)
        assert err.status_code == 502
        assert "proxy_error" in err.details
        assert recorder.direct_calls == 2

    @pytest.mark.asyncio
    async def test_no_fallback_reraises_first_error(self):
        recorder = Recorder(proxy_status=None)
        manager = await _manager(recorder, enable_fallback=False, max_proxy_retries=1)
        with pytest.raises(httpx.ConnectError):
            await manager.request("https://example.com")
        assert recorder.direct_calls == 0

    @pytest.mark.asyncio
    async def test_empty_pool_goes_direct_first(self):
        recorder = Recorder()
        manager = await _manager(recorder, proxies=0)
        await manager.request("https://example.com")
        assert recorder.calls == [None]

    @pytest.mark.asyncio
    async def test_health_advice_reorders_paths(self):
        recorder = Recorder()
        manager = await _manager(recorder)
        manager._last_health = HealthSnapshot(direct=True, proxied=False)
        await manager.request("https://example.com")
        assert recorder.calls == [None]


class TestHealthAndStats:
    """Test health probing and statistics."""

    @pytest.mark.asyncio
    async def test_health_check_probes_both_paths(self):
        recorder = Recorder(proxy_status=None)
        manager = await _manager(recorder)
        snapshot = await manager.perform_health_check()
        assert snapshot.direct is True
        assert snapshot.proxied is False
        assert manager.last_health is snapshot

    @pytest.mark.asyncio
    async def test_stats_and_reset(self):
        recorder = Recorder()
        manager = await _manager(recorder)
        await manager.request("https://example.com")
        await manager.request("https://example.com")
        stats = manager.get_stats()
        assert stats["total_requests"] == 2
        assert stats["success_rate"] == 1.0
        assert stats["mode"] == "auto"

        manager.reset_stats()
        assert manager.get_stats()["total_requests"] == 0
        assert manager.stats.average_response_ms == 0.0

    @pytest.mark.asyncio
    async def test_health_loop_start_stop(self):
        manager = await _manager(Recorder(), health_check_interval_seconds=3600)
        manager.start_health_checks()
        await manager.stop_health_checks()
        assert manager._health_task is None


class TestRecovery:
    """A recovered proxy is back in rotation as soon as its delay elapses."""

    @pytest.mark.asyncio
    async def test_recovered_pool_routes_proxied_again(self):
        recorder = Recorder()
        pool = ProxyPool(deactivation_threshold=1, recovery_seconds=0.01)
        await pool.initialize(make_candidates(1), probe=False)
        manager = ConnectionManager(
            pool, client_factory=mock_client_factory(recorder), retry_backoff_seconds=0
        )

        pool.report_result(pool.records[0].id, False)
        assert manager.proxy_available() is False

        await asyncio.sleep(0.05)

        assert manager.proxy_available() is True
        await manager.request("https://example.com")
        assert recorder.proxied_calls == 1
        assert recorder.direct_calls == 0


class TestBackoff:
    @pytest.mark.asyncio
    async def test_proxied_retries_back_off_linearly(self):
        recorder = Recorder(proxy_status=None)
        manager = await _manager(
            recorder, mode="proxied-only", max_proxy_retries=3, retry_backoff_seconds=0.02
        )

        started = time.monotonic()
        with pytest.raises(httpx.ConnectError):
            await manager.request("https://example.com")
        elapsed = time.monotonic() - started

        assert recorder.proxied_calls == 3
        # 0.02 after the first attempt, 0.04 after the second
        assert elapsed >= 0.06
