"""Shared test fixtures, fakes and hypothesis strategies for the cyclecore test suite."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable

import httpx
import pytest
from hypothesis import strategies as st

from cyclecore.cleanup.pipeline import CleanupPipeline
from cyclecore.cleanup.registry import ResourceRegistry
from cyclecore.config.profiles import CleanupConfig
from cyclecore.config.proxy_sources import ProxyCandidate, ProxyType
from cyclecore.config.search_space import (
    DeviceProfile,
    DeviceType,
    Location,
    Platform,
    SearchSpace,
)
from cyclecore.config.settings import CycleSettings
from cyclecore.monitoring.events import EventBus


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> CycleSettings:
    """Test settings with fast timings and no network at startup."""
    return CycleSettings(
        proxy_sources_path=str(tmp_path / "missing-proxies.yaml"),
        search_space_path=str(tmp_path / "missing-search-space.yaml"),
        probe_on_startup=False,
        autostart_runner=False,
        gc_iterations=1,
        gc_delay_seconds=0,
        browser_verification_delay_seconds=0,
        validation_retry_delay_seconds=0,
        graceful_shutdown_seconds=1,
        connection_health_interval_seconds=3600,
        memory_check_interval_seconds=3600,
    )


# ---------------------------------------------------------------------------
# Search space
# ---------------------------------------------------------------------------

US_NY = Location(city="New York", country="US")
GB_LDN = Location(city="London", country="GB")
DE_BER = Location(city="Berlin", country="DE")
DESKTOP = DeviceProfile(name="desktop", device_type=DeviceType.DESKTOP,
                        viewport_width=1280, viewport_height=800)
MOBILE = DeviceProfile(name="mobile", device_type=DeviceType.MOBILE,
                       viewport_width=390, viewport_height=844)
GOOGLE = Platform(name="Google", base_url="https://www.google.com/search", priority=1.0)
BING = Platform(name="Bing", base_url="https://www.bing.com/search", priority=0.5)


def make_space(
    keywords: list[str] | None = None,
    *,
    locations: list[Location] | None = None,
    devices: list[DeviceProfile] | None = None,
    platforms: list[Platform] | None = None,
    location_sample_size: int = 2,
    device_sample_size: int = 1,
    platform_sample_size: int = 1,
) -> SearchSpace:
    return SearchSpace(
        keywords=keywords or ["a", "b"],
        locations=locations or [US_NY, GB_LDN],
        devices=devices or [DESKTOP],
        platforms=platforms or [GOOGLE],
        location_sample_size=location_sample_size,
        device_sample_size=device_sample_size,
        platform_sample_size=platform_sample_size,
    )


@pytest.fixture
def small_space() -> SearchSpace:
    """2 keywords x 2 locations x 1 device x 1 platform = 4 tasks per cycle."""
    return make_space()


# ---------------------------------------------------------------------------
# Proxies
# ---------------------------------------------------------------------------

def make_candidates(
    count: int,
    proxy_type: ProxyType = ProxyType.DATACENTER,
    country: str | None = "US",
) -> list[ProxyCandidate]:
    return [
        ProxyCandidate(
            host=f"proxy{i}.example",
            port=8000 + i,
            proxy_type=proxy_type,
            country=country,
            city="New York",
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def candidates() -> list[ProxyCandidate]:
    return make_candidates(3)


def mock_client_factory(
    handler: Callable[[httpx.Request, str | None], httpx.Response],
) -> Callable[..., httpx.AsyncClient]:
    """``client_factory`` whose clients answer through *handler*.

    The handler receives the request and the proxy URL the client was built
    with (``None`` for direct).
    """

    def factory(*, proxy: str | None = None, **kwargs: object) -> httpx.AsyncClient:
        transport = httpx.MockTransport(lambda request: handler(request, proxy))
        return httpx.AsyncClient(transport=transport, **kwargs)

    return factory


# ---------------------------------------------------------------------------
# Cleanup fakes
# ---------------------------------------------------------------------------

class FakeResource:
    """Disposable that records its close; optionally async or failing."""

    def __init__(self, *, fail: bool = False, is_async: bool = False) -> None:
        self.closed = False
        self._fail = fail
        self._is_async = is_async

    def _do_close(self) -> None:
        if self._fail:
            raise RuntimeError("close failed")
        self.closed = True

    def close(self):
        if self._is_async:
            async def _close() -> None:
                self._do_close()
            return _close()
        self._do_close()
        return None


class FakeBrowser:
    """Minimal stand-in for a Playwright Browser."""

    def __init__(
        self, *, stays_connected: bool = False, fail_close: bool = False, hang_close: bool = False
    ) -> None:
        self._connected = True
        self._stays_connected = stays_connected
        self._fail_close = fail_close
        self._hang_close = hang_close
        self.close_calls = 0
        self.contexts: list = []
        self.handlers: dict[str, Callable] = {}
        self.launch_kwargs: dict = {}

    async def close(self) -> None:
        self.close_calls += 1
        if self._hang_close:
            await asyncio.Event().wait()
        if self._fail_close:
            raise RuntimeError("browser close failed")
        if not self._stays_connected:
            self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def on(self, event: str, handler: Callable) -> None:
        self.handlers[event] = handler

    async def new_context(self, **kwargs):
        context = FakeContext(self, kwargs)
        self.contexts.append(context)
        return context


class FakeContext:
    def __init__(self, browser: FakeBrowser, options: dict) -> None:
        self.browser = browser
        self.options = options
        self.closed = False

    async def new_page(self):
        return FakePage(self)

    async def close(self) -> None:
        self.closed = True
        if self in self.browser.contexts:
            self.browser.contexts.remove(self)


class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status


class FakePage:
    def __init__(self, context: FakeContext, status: int = 200) -> None:
        self.context = context
        self.status = status
        self.visited: list[str] = []

    async def goto(self, url: str, timeout: float | None = None):
        self.visited.append(url)
        return FakeResponse(self.status)


class FakeChromium:
    def __init__(self) -> None:
        self.launched: list[FakeBrowser] = []

    async def launch(self, **kwargs) -> FakeBrowser:
        browser = FakeBrowser()
        browser.launch_kwargs = kwargs
        self.launched.append(browser)
        return browser


class FakePlaywright:
    def __init__(self) -> None:
        self.chromium = FakeChromium()
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakePlaywrightManager:
    """Mimics ``async_playwright()``: ``await factory().start()``."""

    def __init__(self) -> None:
        self.playwright = FakePlaywright()

    async def start(self) -> FakePlaywright:
        return self.playwright


class MemorySeries:
    """Memory sampler returning scripted values, repeating the last one."""

    def __init__(self, *values: int) -> None:
        self._values = list(values)
        self.calls = 0

    def __call__(self) -> int:
        index = min(self.calls, len(self._values) - 1)
        self.calls += 1
        return self._values[index]


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(default_maxsize=64)


@pytest.fixture
def registry() -> ResourceRegistry:
    return ResourceRegistry()


@pytest.fixture
def fast_cleanup_config() -> CleanupConfig:
    return CleanupConfig(
        browser_close_timeout=1,
        browser_verification_retries=2,
        browser_verification_delay=0,
        gc_iterations=1,
        gc_delay=0,
        queue_timeout=1,
        queue_poll_interval=0.01,
        validation_retry_delay=0,
    )


@pytest.fixture
def pipeline(
    registry: ResourceRegistry,
    fast_cleanup_config: CleanupConfig,
    event_bus: EventBus,
) -> CleanupPipeline:
    return CleanupPipeline(
        registry,
        fast_cleanup_config,
        event_bus=event_bus,
        memory_sampler=MemorySeries(100 * 1024 * 1024),
        liveness_probe=lambda pid: False,
        killer=lambda pid: True,
    )


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


# ---------------------------------------------------------------------------
# Hypothesis strategies
# ---------------------------------------------------------------------------

keyword_lists = st.lists(
    st.text(alphabet="abcdefghijklmnopqrstuvwxyz ", min_size=1, max_size=12),
    min_size=1,
    max_size=4,
    unique=True,
)

outcome_sequences = st.lists(st.booleans(), min_size=1, max_size=80)
