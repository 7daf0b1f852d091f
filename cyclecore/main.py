"""FastAPI application entry point with lifespan management.

Startup: configure logging, build the event bus and resource registry, load
proxy candidates and probe them, load the search space, start the connection
health loop, the memory guard and the cycle runner.
Shutdown: stop the runner (interrupting any pending delay), stop background
loops, run a final cleanup pass, close the browser pool.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cyclecore.browser.executor import BrowserTaskExecutor
from cyclecore.browser.pool import BrowserPool
from cyclecore.cleanup.pipeline import CleanupPipeline
from cyclecore.cleanup.registry import ResourceRegistry
from cyclecore.config.proxy_sources import collect_candidates
from cyclecore.config.search_space import load_search_space
from cyclecore.config.settings import CycleSettings
from cyclecore.connection.manager import ConnectionManager
from cyclecore.logging_config import configure_logging
from cyclecore.middleware.error_handler import register_error_handlers
from cyclecore.monitoring.events import EventBus, log_events
from cyclecore.monitoring.memory_guard import MemoryGuard
from cyclecore.proxy.pool import ProxyPool
from cyclecore.routers.health import create_health_router
from cyclecore.scheduling.executor import HttpTaskExecutor, TaskExecutor
from cyclecore.scheduling.generator import SearchSpaceGenerator
from cyclecore.scheduling.interval import IntervalScheduler
from cyclecore.scheduling.runner import CycleRunner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    settings: CycleSettings = app.state.settings
    configure_logging(settings.log_level)
    logger.info("Starting cycle service on port %d", settings.port)

    event_bus = EventBus(default_maxsize=settings.event_queue_size)
    events_task = asyncio.create_task(log_events(event_bus.subscribe()), name="event-log")

    registry = ResourceRegistry()
    cleanup = CleanupPipeline(registry, settings.cleanup_config(), event_bus=event_bus)

    proxy_pool = ProxyPool(
        strategy=settings.rotation_strategy,
        deactivation_threshold=settings.deactivation_threshold,
        recovery_seconds=settings.recovery_seconds,
        min_reliability=settings.min_reliability,
        success_step=settings.reliability_success_step,
        failure_step=settings.reliability_failure_step,
        probe_url=settings.probe_url,
        probe_timeout_seconds=settings.probe_timeout_seconds,
        event_bus=event_bus,
    )
    await proxy_pool.initialize(
        collect_candidates(settings.proxy_sources_path, settings.proxy_endpoints),
        probe=settings.probe_on_startup,
    )

    connection = ConnectionManager(
        proxy_pool,
        mode=settings.connection_mode,
        prefer_proxy=settings.prefer_proxy,
        enable_fallback=settings.enable_direct_fallback,
        max_proxy_retries=settings.max_proxy_retries,
        max_direct_retries=settings.max_direct_retries,
        request_timeout_seconds=settings.request_timeout_seconds,
        health_check_interval_seconds=settings.connection_health_interval_seconds,
        probe_url=settings.probe_url,
    )
    connection.start_health_checks()

    # The HTTP executor lets the connection manager own proxy selection
    browser_pool: BrowserPool | None = None
    executor: TaskExecutor | None = app.state.executor
    runner_pool: ProxyPool | None = proxy_pool
    if executor is None and settings.task_executor == "browser":
        browser_pool = BrowserPool(registry, page_limit=settings.browser_page_limit)
        await browser_pool.initialize()
        executor = BrowserTaskExecutor(
            browser_pool, navigation_timeout_ms=settings.request_timeout_seconds * 1000
        )
    elif executor is None:
        executor = HttpTaskExecutor(connection)
        runner_pool = None

    generator = SearchSpaceGenerator(
        load_search_space(settings.search_space_path),
        buffer_size=settings.buffer_size,
    )
    runner = CycleRunner(
        generator=generator,
        scheduler=IntervalScheduler(settings.interval_profile()),
        executor=executor,
        proxy_pool=runner_pool,
        cleanup=cleanup,
        max_concurrency=settings.max_concurrency,
        task_timeout_seconds=settings.task_timeout_seconds,
    )

    memory_guard = MemoryGuard(
        threshold_bytes=settings.memory_threshold_bytes,
        check_interval_seconds=settings.memory_check_interval_seconds,
        cleanup=cleanup,
        event_bus=event_bus,
    )
    memory_guard.start()

    app.include_router(
        create_health_router(
            proxy_pool=proxy_pool,
            connection=connection,
            runner=runner,
            cleanup=cleanup,
            memory_guard=memory_guard,
            browser_pool=browser_pool,
            event_bus=event_bus,
        )
    )

    app.state.components = {
        "event_bus": event_bus,
        "registry": registry,
        "cleanup": cleanup,
        "proxy_pool": proxy_pool,
        "connection": connection,
        "runner": runner,
        "memory_guard": memory_guard,
        "browser_pool": browser_pool,
    }

    if settings.autostart_runner:
        runner.start()

    logger.info("Cycle service started successfully")

    yield

    # --- Shutdown ---
    logger.info("Shutting down cycle service…")

    await runner.stop(timeout=settings.graceful_shutdown_seconds)
    await memory_guard.stop()
    await connection.close()

    try:
        await cleanup.execute("shutdown")
    except Exception:
        logger.exception("Final cleanup failed")

    if browser_pool is not None:
        await browser_pool.shutdown()

    events_task.cancel()
    try:
        await events_task
    except asyncio.CancelledError:
        pass

    logger.info("Cycle service shut down")


def create_app(
    settings: CycleSettings | None = None,
    *,
    executor: TaskExecutor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    *executor* replaces the built-in executor selected by
    ``CYCLE_TASK_EXECUTOR``; the runner then assigns a proxy to every task.
    """
    app = FastAPI(
        title="Cycle Core Service",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or CycleSettings()
    app.state.executor = executor

    register_error_handlers(app)
    return app


app = create_app()
