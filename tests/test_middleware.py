# tests/test_middleware.py
"""Tests for bulksend/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from bulksend.infra.metrics import get_metrics_collector
from bulksend.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None, logging_enabled: bool = True):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Same order as http_app: RequestID is outermost
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=logging_enabled)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/bulk-jobs/{job_id}/continue")
    def continue_endpoint(job_id: str):
        if "/continue" in raise_for:
            raise RuntimeError("chunk boom")
        return {"job_id": job_id}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        # Should be a UUID-style string
        assert len(resp.headers["X-Request-ID"]) >= 32

    def test_preserves_existing_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test", headers={"X-Request-ID": "sweep-run-42"})
        assert resp.headers["X-Request-ID"] == "sweep-run-42"


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================

class TestRequestLoggingMiddleware:
    def test_request_duration_recorded(self):
        collector = get_metrics_collector()
        key = "http_request_ms{method=POST}"
        before = collector.get_metrics()["histograms"].get(key, {"count": 0})["count"]

        client = TestClient(_build_app())
        resp = client.post("/bulk-jobs/abc/continue")

        assert resp.json() == {"job_id": "abc"}
        assert collector.get_metrics()["histograms"][key]["count"] == before + 1

    def test_disabled_logging_passes_through(self):
        client = TestClient(_build_app(logging_enabled=False))
        assert client.get("/test").json() == {"ok": True}


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_generic_error_returns_500(self):
        client = TestClient(_build_app(raise_for={"/continue"}), raise_server_exceptions=False)
        resp = client.post("/bulk-jobs/abc/continue", headers={"X-Request-ID": "req-1"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error", "request_id": "req-1"}
