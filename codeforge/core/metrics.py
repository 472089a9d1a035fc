"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Codeforge generation service info")
APP_INFO.info({"version": "1.0.0", "name": "codeforge"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 180],
)

GENERATION_OUTCOMES = Counter(
    "codegen_generations_total",
    "Generation attempts by provider and outcome",
    ["provider", "outcome"],
)

CACHE_LOOKUPS = Counter(
    "codegen_cache_lookups_total",
    "Response cache lookups by result (exact, fuzzy, miss)",
    ["result"],
)

CREDENTIAL_ROTATIONS = Counter(
    "codegen_credential_rotations_total",
    "Credential rotations caused by rate limits or errors",
    ["provider", "reason"],
)

AUDIT_RUNS = Counter(
    "codegen_audit_runs_total",
    "Silent audit passes by outcome",
    ["outcome"],
)


# --- Middleware ---


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
