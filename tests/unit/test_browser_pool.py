"""Unit tests for the browser pool and browser executor, using a fake Playwright."""

import pytest

from conftest import FakePlaywrightManager, MOBILE, make_space
from cyclecore.browser.executor import BrowserTaskExecutor
from cyclecore.browser.pool import BrowserPool, launch_proxy_settings
from cyclecore.cleanup.registry import ResourceRegistry
from cyclecore.config.proxy_sources import ProxyCandidate
from cyclecore.proxy.types import ProxyRecord
from cyclecore.scheduling.generator import SearchSpaceGenerator


def _proxy(host: str = "p.example", username: str | None = "user") -> ProxyRecord:
    candidate = ProxyCandidate(host=host, port=8080, username=username, password="pw" if username else None)
    return ProxyRecord.from_candidate(candidate)


async def _pool(registry: ResourceRegistry, **kwargs) -> tuple[BrowserPool, FakePlaywrightManager]:
    manager = FakePlaywrightManager()
    pool = BrowserPool(registry, playwright_factory=lambda: manager, **kwargs)
    await pool.initialize()
    return pool, manager


class TestLaunch:
    def test_proxy_settings_keep_credentials_out_of_server(self):
        settings = launch_proxy_settings(_proxy())
        assert settings == {"server": "http://p.example:8080", "username": "user", "password": "pw"}

    @pytest.mark.asyncio
    async def test_acquire_before_initialize_fails(self, registry):
        pool = BrowserPool(registry)
        with pytest.raises(RuntimeError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_acquire_launches_and_registers(self, registry):
        pool, manager = await _pool(registry)
        instance = await pool.acquire(_proxy())

        launched = manager.playwright.chromium.launched
        assert len(launched) == 1
        assert launched[0].launch_kwargs["proxy"]["server"] == "http://p.example:8080"
        assert instance.id in registry.browsers
        assert pool.get_stats()["in_use"] == 1

    @pytest.mark.asyncio
    async def test_direct_launch_has_no_proxy(self, registry):
        pool, manager = await _pool(registry)
        await pool.acquire(None)
        assert "proxy" not in manager.playwright.chromium.launched[0].launch_kwargs


class TestReuse:
    @pytest.mark.asyncio
    async def test_release_then_reuse_same_proxy(self, registry):
        pool, manager = await _pool(registry)
        proxy = _proxy()
        first = await pool.acquire(proxy)
        await pool.release(first)
        second = await pool.acquire(proxy)
        assert second is first
        assert len(manager.playwright.chromium.launched) == 1

    @pytest.mark.asyncio
    async def test_different_proxy_gets_new_browser(self, registry):
        pool, manager = await _pool(registry)
        first = await pool.acquire(_proxy("a.example"))
        await pool.release(first)
        await pool.acquire(_proxy("b.example"))
        assert len(manager.playwright.chromium.launched) == 2

    @pytest.mark.asyncio
    async def test_recycles_after_page_limit(self, registry):
        pool, _ = await _pool(registry, page_limit=2)
        instance = await pool.acquire()
        await pool.release(instance)
        instance = await pool.acquire()
        await pool.release(instance)

        assert instance.browser.close_calls == 1
        assert instance.id not in registry.browsers
        assert pool.get_stats()["recycled_count"] == 1

    @pytest.mark.asyncio
    async def test_disconnected_instances_not_reused(self, registry):
        pool, manager = await _pool(registry)
        first = await pool.acquire()
        await pool.release(first)
        first.browser._connected = False
        first.browser.handlers["disconnected"](first.browser)

        second = await pool.acquire()
        assert second is not first
        assert len(manager.playwright.chromium.launched) == 2

    @pytest.mark.asyncio
    async def test_shutdown(self, registry):
        pool, manager = await _pool(registry)
        instance = await pool.acquire()
        await pool.shutdown()
        assert instance.browser.close_calls == 1
        assert manager.playwright.stopped is True
        assert registry.counts()["browsers"] == 0
        assert pool.initialized is False


class TestBrowserExecutor:
    @pytest.mark.asyncio
    async def test_executes_through_assigned_proxy(self, registry):
        pool, manager = await _pool(registry)
        space = make_space(keywords=["shoes"], devices=[MOBILE])
        task = SearchSpaceGenerator(space).next_task()
        task.assign_proxy(_proxy())

        outcome = await BrowserTaskExecutor(pool).execute(task)

        assert outcome.success is True
        browser = manager.playwright.chromium.launched[0]
        assert browser.launch_kwargs["proxy"]["username"] == "user"
        # context closed after the page load and instance returned to the pool
        assert browser.contexts == []
        assert pool.get_stats()["available"] == 1
