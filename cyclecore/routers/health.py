"""Health, readiness, metrics and cleanup endpoints.

- GET /health: service status + component stats
- GET /readiness: 200 only when an egress path is usable and memory is not critical
- GET /metrics: operational metrics
- GET /cleanup/history: archived cleanup jobs, newest first
- POST /cleanup: run the cleanup pipeline now
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query, Response

from cyclecore.models.responses import ApiResponse, CleanupRequest

if TYPE_CHECKING:
    from cyclecore.cleanup.pipeline import CleanupPipeline


def _stats(component: Any) -> dict:
    return component.get_stats() if component is not None else {}


def create_health_router(
    *,
    proxy_pool: Any = None,
    connection: Any = None,
    runner: Any = None,
    cleanup: CleanupPipeline | None = None,
    memory_guard: Any = None,
    browser_pool: Any = None,
    event_bus: Any = None,
) -> APIRouter:
    """Factory that creates the health router with injected dependencies."""

    health_router = APIRouter(tags=["health"])

    @health_router.get("/health")
    async def health() -> dict:
        """Service health check with component statistics."""
        memory = memory_guard.health_check() if memory_guard else {"status": "unknown"}
        proxy_stats = _stats(proxy_pool)

        return ApiResponse(
            success=True,
            data={
                "status": "healthy" if memory["status"] != "critical" else "degraded",
                "memory": memory,
                "proxy_pool": {
                    "total": proxy_stats.get("total", 0),
                    "active": proxy_stats.get("active", 0),
                },
                "runner": {"running": runner.is_running} if runner else {},
                "cleanup": {"running": cleanup.is_running} if cleanup else {},
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        """Readiness probe: an egress path is usable and memory is not critical."""
        proxy_active = _stats(proxy_pool).get("active", 0)
        direct_allowed = connection is not None and connection.mode.value != "proxied-only"
        memory_status = memory_guard.health_check()["status"] if memory_guard else "unknown"

        is_ready = (proxy_active > 0 or direct_allowed) and memory_status != "critical"
        if not is_ready:
            response.status_code = 503

        return ApiResponse(
            success=is_ready,
            data={
                "ready": is_ready,
                "proxy_active": proxy_active,
                "direct_allowed": direct_allowed,
                "memory_status": memory_status,
            },
            error=None if is_ready else "Service not ready",
        ).model_dump()

    @health_router.get("/metrics")
    async def metrics() -> dict:
        """Operational metrics endpoint."""
        return ApiResponse(
            success=True,
            data={
                "proxy_pool": _stats(proxy_pool),
                "connection": _stats(connection),
                "runner": _stats(runner),
                "cleanup": _stats(cleanup),
                "memory": _stats(memory_guard),
                "browser_pool": _stats(browser_pool),
                "events": _stats(event_bus),
            },
        ).model_dump()

    @health_router.get("/cleanup/history")
    async def cleanup_history(limit: int = Query(default=10, ge=1, le=100)) -> dict:
        """Most recent cleanup jobs, newest first."""
        jobs = list(reversed(cleanup.history))[:limit] if cleanup else []
        return ApiResponse(
            success=True,
            data=[job.to_dict() for job in jobs],
            meta={"total": len(cleanup.history) if cleanup else 0},
        ).model_dump()

    @health_router.post("/cleanup")
    async def run_cleanup(request: CleanupRequest, response: Response) -> dict:
        """Run the cleanup pipeline immediately (queued behind a running one)."""
        if cleanup is None:
            response.status_code = 503
            return ApiResponse(success=False, error="Cleanup pipeline not available").model_dump()
        job = await cleanup.execute(request.cycle_id)
        return ApiResponse(success=job.success, data=job.to_dict()).model_dump()

    return health_router
