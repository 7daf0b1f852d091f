"""Playwright browser pool.

Browsers are launched on demand, one per egress identity: Chromium's proxy is
fixed at launch, so idle instances are kept per proxy id (or ``direct``).
Every launched browser is registered with the resource registry, which makes
the cleanup pipeline responsible for its final release. Instances are recycled
after a configurable number of pages; disconnected instances are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from cyclecore.config.search_space import DeviceProfile, DeviceType

if TYPE_CHECKING:
    from playwright.async_api import Page

    from cyclecore.cleanup.registry import ResourceRegistry
    from cyclecore.proxy.types import ProxyRecord

logger = logging.getLogger(__name__)

# Chromium flags for containerized / headless operation
CHROMIUM_ARGS: list[str] = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

DIRECT_KEY = "direct"


def launch_proxy_settings(proxy: ProxyRecord) -> dict:
    """Playwright ``proxy`` launch option for *proxy*; credentials kept separate."""
    settings: dict = {"server": f"{proxy.scheme}://{proxy.host}:{proxy.port}"}
    if proxy.username:
        settings["username"] = proxy.username
    if proxy.password:
        settings["password"] = proxy.password
    return settings


@dataclass
class BrowserInstance:
    """A single managed browser instance."""

    id: str
    browser: Any  # playwright.async_api.Browser at runtime
    proxy_key: str = DIRECT_KEY
    pages_processed: int = 0
    created_at: float = field(default_factory=time.monotonic)

    async def new_page(self, device: DeviceProfile | None = None) -> "Page":
        """Create a page in a fresh context shaped after *device*."""
        context_kwargs: dict = {}
        if device is not None:
            if device.viewport_width and device.viewport_height:
                context_kwargs["viewport"] = {
                    "width": device.viewport_width,
                    "height": device.viewport_height,
                }
            if device.device_type != DeviceType.DESKTOP:
                context_kwargs["is_mobile"] = True
                context_kwargs["has_touch"] = True
        context = await self.browser.new_context(**context_kwargs)
        return await context.new_page()

    def needs_recycling(self, max_pages: int) -> bool:
        return self.pages_processed >= max_pages

    def is_connected(self) -> bool:
        return bool(self.browser.is_connected())


class BrowserPool:
    """Launches, reuses and recycles Playwright Chromium instances.

    Lifecycle
    ---------
    1. ``initialize()``: start the Playwright driver.
    2. ``acquire(proxy)``: reuse an idle instance for *proxy* or launch one.
    3. ``release(instance)``: count the page, recycle past ``page_limit``.
    4. ``shutdown()``: close everything and stop Playwright.
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        *,
        page_limit: int = 100,
        headless: bool = True,
        playwright_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._registry = registry
        self._page_limit = page_limit
        self._headless = headless
        self._playwright_factory = playwright_factory
        self._playwright: Any = None
        self._idle: dict[str, list[BrowserInstance]] = {}
        self._in_use: dict[str, BrowserInstance] = {}
        self._all: dict[str, BrowserInstance] = {}
        self._lock = asyncio.Lock()
        self._launched_count = 0
        self._recycled_count = 0
        self._pages_processed = 0
        self._shutting_down = False

    @property
    def initialized(self) -> bool:
        return self._playwright is not None

    async def initialize(self) -> None:
        """Start the Playwright driver."""
        factory = self._playwright_factory
        if factory is None:
            from playwright.async_api import async_playwright

            factory = async_playwright
        self._playwright = await factory().start()
        self._shutting_down = False
        logger.info("Browser pool initialized: page_limit=%d", self._page_limit)

    # ------------------------------------------------------------------
    # acquire / release
    # ------------------------------------------------------------------

    async def acquire(self, proxy: ProxyRecord | None = None) -> BrowserInstance:
        """Return a browser routed through *proxy* (direct when ``None``)."""
        if self._playwright is None:
            raise RuntimeError("Browser pool not initialized")

        key = proxy.id if proxy is not None else DIRECT_KEY
        async with self._lock:
            idle = self._idle.get(key, [])
            while idle:
                instance = idle.pop()
                if instance.id in self._all and instance.is_connected():
                    self._in_use[instance.id] = instance
                    logger.debug("Reusing browser instance %s for %s", instance.id, key)
                    return instance
                self._forget(instance)

            instance = await self._launch_instance(proxy)
            self._in_use[instance.id] = instance
            return instance

    async def release(self, instance: BrowserInstance) -> None:
        """Return *instance* for reuse, or recycle it past the page limit."""
        self._in_use.pop(instance.id, None)
        instance.pages_processed += 1
        self._pages_processed += 1

        if instance.id not in self._all:
            # Already released by the cleanup pipeline or disconnected
            return

        if self._shutting_down or instance.needs_recycling(self._page_limit):
            logger.info(
                "Recycling browser instance %s after %d pages",
                instance.id,
                instance.pages_processed,
            )
            await self._close_instance(instance)
            self._recycled_count += 1
            return

        try:
            for context in list(instance.browser.contexts):
                await context.close()
        except Exception:
            logger.warning(
                "Failed to clear state on instance %s — recycling",
                instance.id,
                exc_info=True,
            )
            await self._close_instance(instance)
            self._recycled_count += 1
            return

        self._idle.setdefault(instance.proxy_key, []).append(instance)
        logger.debug("Released browser instance %s back to pool", instance.id)

    # ------------------------------------------------------------------
    # shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Close all browser instances and stop Playwright."""
        self._shutting_down = True
        logger.info("Shutting down browser pool…")

        for instance in list(self._all.values()):
            await self._close_instance(instance)
        self._idle.clear()
        self._in_use.clear()

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Browser pool shut down")

    def get_stats(self) -> dict:
        return {
            "total": len(self._all),
            "available": sum(len(v) for v in self._idle.values()),
            "in_use": len(self._in_use),
            "launched_count": self._launched_count,
            "recycled_count": self._recycled_count,
            "pages_processed": self._pages_processed,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _launch_instance(self, proxy: ProxyRecord | None) -> BrowserInstance:
        launch_kwargs: dict = {"headless": self._headless, "args": CHROMIUM_ARGS}
        if proxy is not None:
            launch_kwargs["proxy"] = launch_proxy_settings(proxy)

        browser = await self._playwright.chromium.launch(**launch_kwargs)
        instance = BrowserInstance(
            id=f"browser-{uuid4().hex[:12]}",
            browser=browser,
            proxy_key=proxy.id if proxy is not None else DIRECT_KEY,
        )
        self._all[instance.id] = instance
        self._launched_count += 1
        self._registry.register_browser(instance.id, browser)

        browser.on("disconnected", lambda _browser: self._on_disconnected(instance.id))
        logger.debug(
            "Launched browser instance %s via %s",
            instance.id,
            proxy.redacted_url if proxy is not None else DIRECT_KEY,
        )
        return instance

    def _on_disconnected(self, instance_id: str) -> None:
        instance = self._all.get(instance_id)
        if instance is None or self._shutting_down:
            return
        logger.warning("Browser instance %s disconnected — dropping", instance_id)
        self._forget(instance)

    def _forget(self, instance: BrowserInstance) -> None:
        self._all.pop(instance.id, None)
        self._in_use.pop(instance.id, None)
        idle = self._idle.get(instance.proxy_key)
        if idle and instance in idle:
            idle.remove(instance)

    async def _close_instance(self, instance: BrowserInstance) -> None:
        """Close *instance* and withdraw it from the registry."""
        self._forget(instance)
        self._registry.unregister_browser(instance.id)
        try:
            await instance.browser.close()
        except Exception:
            logger.debug(
                "Error closing browser instance %s (may already be closed)",
                instance.id,
                exc_info=True,
            )
