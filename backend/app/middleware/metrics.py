"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes
application-level counters for the processing pipeline.
"""

import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Processing metrics ───────────────────────────────────────────────────────

processing_runs_total = Counter(
    "processing_runs_total",
    "Processing runs by outcome",
    ["status"],
)

processing_stage_duration_seconds = Histogram(
    "processing_stage_duration_seconds",
    "Wall-clock duration of a single pipeline stage",
    ["stage"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

processing_records_total = Counter(
    "processing_records_total",
    "Records carried through completed processing runs",
)

processing_active_runs = Gauge(
    "processing_active_runs",
    "Runs with a live background task in this process",
)


def _normalize_path(path: str) -> str:
    """Collapse numeric path parameters to reduce cardinality.

    e.g. /api/processing/runs/42/stages → /api/processing/runs/{id}/stages
    """
    parts = path.strip("/").split("/")
    normalized = ["{id}" if part.isdigit() else part for part in parts]
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint itself to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
