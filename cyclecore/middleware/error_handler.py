"""Error hierarchy and FastAPI exception handlers.

All cyclecore errors extend CycleCoreError. The FastAPI exception handlers
render them (plus Pydantic's RequestValidationError and unhandled exceptions)
as the JSON envelope: { success, data, error, meta }.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class CycleCoreError(Exception):
    """Base error for all cyclecore errors."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class PoolExhaustedError(CycleCoreError):
    """No proxy record qualifies, even after relaxing the filters."""

    status_code = 503
    message = "Proxy pool exhausted: no active proxy available"


class ConnectionFailureError(CycleCoreError):
    """Both the proxied and the direct path failed for a request."""

    status_code = 502
    message = "Both proxied and direct connections failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        proxy_error: BaseException | None = None,
        direct_error: BaseException | None = None,
        **kwargs: object,
    ) -> None:
        self.proxy_error = proxy_error
        self.direct_error = direct_error
        if message is None:
            message = (
                f"{self.__class__.message}. "
                f"Proxy: {proxy_error}, Direct: {direct_error}"
            )
        super().__init__(
            message,
            proxy_error=str(proxy_error) if proxy_error else None,
            direct_error=str(direct_error) if direct_error else None,
            **kwargs,
        )


class CleanupPhaseError(CycleCoreError):
    """A cleanup phase failed and the pipeline is configured not to tolerate it."""

    status_code = 500
    message = "Cleanup phase failed"

    def __init__(self, message: str | None = None, *, phase: str = "", **kwargs: object) -> None:
        self.phase = phase
        super().__init__(message, phase=phase, **kwargs)


class CleanupTimeoutError(CycleCoreError):
    """A queued cleanup request waited longer than the queue timeout."""

    status_code = 504
    message = "Cleanup queue timeout"


class LeakWarning(CycleCoreError):
    """Memory grew across a cleanup pass beyond the leak threshold.

    Informational: recorded on the cleanup job and published as an event,
    never raised by the pipeline.
    """

    status_code = 200
    message = "Potential memory leak detected"

    def __init__(self, growth_bytes: int, threshold_bytes: int) -> None:
        self.growth_bytes = growth_bytes
        self.threshold_bytes = threshold_bytes
        super().__init__(
            f"Potential memory leak detected: {growth_bytes // 1024}KB increase "
            f"(threshold {threshold_bytes // 1024}KB)",
            growth_bytes=growth_bytes,
            threshold_bytes=threshold_bytes,
        )


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _cyclecore_error_handler(_request: Request, exc: CycleCoreError) -> JSONResponse:
    """Handle CycleCoreError subclasses."""
    meta = exc.details if exc.details else None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI / Pydantic RequestValidationError (422)."""
    field_errors = [
        {
            "field": " -> ".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _envelope(
        status_code=422,
        error="Validation error",
        meta={"fields": field_errors},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log the traceback and return a generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(CycleCoreError, _cyclecore_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
