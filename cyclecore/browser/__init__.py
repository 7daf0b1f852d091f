"""Playwright browser pool and the browser-backed task executor."""

from cyclecore.browser.executor import BrowserTaskExecutor
from cyclecore.browser.pool import BrowserInstance, BrowserPool

__all__ = ["BrowserInstance", "BrowserPool", "BrowserTaskExecutor"]
