"""Unit tests for the error hierarchy and FastAPI exception handlers."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from cyclecore.middleware.error_handler import (
    CleanupPhaseError,
    CleanupTimeoutError,
    ConnectionFailureError,
    CycleCoreError,
    LeakWarning,
    PoolExhaustedError,
    register_error_handlers,
)


# ---------------------------------------------------------------------------
# Test app fixture
# ---------------------------------------------------------------------------


def _make_app() -> FastAPI:
    """Build a minimal FastAPI app with error handlers registered."""
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/raise-base")
    async def _raise_base():
        raise CycleCoreError()

    @app.get("/raise-pool")
    async def _raise_pool():
        raise PoolExhaustedError()

    @app.get("/raise-connection")
    async def _raise_connection():
        raise ConnectionFailureError(
            proxy_error=TimeoutError("proxy timed out"),
            direct_error=ConnectionError("refused"),
        )

    @app.get("/raise-phase")
    async def _raise_phase():
        raise CleanupPhaseError("memory release failed", phase="memory_release")

    @app.get("/raise-queue-timeout")
    async def _raise_queue_timeout():
        raise CleanupTimeoutError()

    @app.get("/raise-unhandled")
    async def _raise_unhandled():
        raise RuntimeError("boom")

    @app.get("/needs-int")
    async def _needs_int(n: int):
        return {"n": n}

    return app


client = TestClient(_make_app(), raise_server_exceptions=False)


class TestErrorHierarchy:
    def test_all_errors_extend_base(self):
        for cls in (PoolExhaustedError, ConnectionFailureError, CleanupPhaseError,
                    CleanupTimeoutError, LeakWarning):
            assert issubclass(cls, CycleCoreError)

    def test_default_message(self):
        assert PoolExhaustedError().message == PoolExhaustedError.message

    def test_details_from_kwargs(self):
        err = CycleCoreError("custom", cycle_id="c1")
        assert err.message == "custom"
        assert err.details == {"cycle_id": "c1"}

    def test_connection_failure_keeps_both_causes(self):
        proxy_error = TimeoutError("proxy timed out")
        direct_error = ConnectionError("refused")
        err = ConnectionFailureError(proxy_error=proxy_error, direct_error=direct_error)
        assert err.proxy_error is proxy_error
        assert err.direct_error is direct_error
        assert "proxy timed out" in err.message
        assert "refused" in err.message

    def test_leak_warning_fields(self):
        warning = LeakWarning(100 * 1024, 50 * 1024)
        assert warning.growth_bytes == 100 * 1024
        assert "100KB" in warning.message


class TestHandlers:
    def test_base_error_envelope(self):
        response = client.get("/raise-base")
        assert response.status_code == 500
        body = response.json()
        assert body == {
            "success": False,
            "data": None,
            "error": "Internal server error",
            "meta": None,
        }

    def test_pool_exhausted_503(self):
        response = client.get("/raise-pool")
        assert response.status_code == 503
        assert response.json()["success"] is False

    def test_connection_failure_502_with_causes(self):
        response = client.get("/raise-connection")
        assert response.status_code == 502
        meta = response.json()["meta"]
        assert meta["proxy_error"] == "proxy timed out"
        assert meta["direct_error"] == "refused"

    def test_cleanup_phase_500_with_phase(self):
        response = client.get("/raise-phase")
        assert response.status_code == 500
        assert response.json()["meta"] == {"phase": "memory_release"}

    def test_queue_timeout_504(self):
        assert client.get("/raise-queue-timeout").status_code == 504

    def test_unhandled_generic_500(self):
        response = client.get("/raise-unhandled")
        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"
        assert "boom" not in response.text

    def test_validation_422(self):
        response = client.get("/needs-int", params={"n": "abc"})
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "Validation error"
        assert body["meta"]["fields"][0]["field"] == "query -> n"
