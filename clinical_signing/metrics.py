"""Prometheus metrics for the signing core.

Metrics goals:
- low-cardinality labels (outcome codes only; never signer ids, documents or
  anything derived from a password)
- internal observability for unlock attempts, container fetches and signatures
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
UNLOCK_ATTEMPTS_TOTAL = Counter(
    "cs_unlock_attempts_total",
    "Certificate unlock attempts",
    ["outcome"],
)
SIGNATURES_TOTAL = Counter(
    "cs_signatures_total",
    "Document signing attempts",
    ["outcome"],
)
CONTAINER_FETCH_TOTAL = Counter(
    "cs_container_fetch_total",
    "Certificate container fetches from the blob store",
    ["outcome"],
)
UNLOCKED_SESSIONS = Gauge(
    "cs_unlocked_sessions",
    "Key sessions currently holding an unlocked private key",
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "cs_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)


def record_unlock(outcome: str) -> None:
    UNLOCK_ATTEMPTS_TOTAL.labels(outcome=str(outcome)).inc()


def record_signature(outcome: str) -> None:
    SIGNATURES_TOTAL.labels(outcome=str(outcome)).inc()


def record_container_fetch(outcome: str) -> None:
    CONTAINER_FETCH_TOTAL.labels(outcome=str(outcome)).inc()


def session_unlocked() -> None:
    UNLOCKED_SESSIONS.inc()


def session_locked() -> None:
    UNLOCKED_SESSIONS.dec()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("CS_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUEST_LATENCY_SECONDS.labels(
                method=request.method, route=route_path, status=str(status)
            ).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
