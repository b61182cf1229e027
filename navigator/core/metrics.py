"""Prometheus metrics for the application."""

import re
import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Maryland navigator application info")
APP_INFO.info({"version": "1.0.0", "name": "md_navigator"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

EFILE_TRANSMISSIONS = Counter(
    "efile_transmissions_total",
    "Return transmissions attempted by the e-file queues",
    ["queue", "outcome"],  # outcome: success / retry / dead_letter / rejected / failed
)

EFILE_QUEUE_RUNS = Counter(
    "efile_queue_runs_total",
    "Queue processing passes",
    ["queue", "status"],  # status: ok / skipped / error
)

EFILE_QUEUE_DEPTH = Gauge(
    "efile_queue_depth",
    "Returns waiting in a queue at the last health check",
    ["queue"],
)

SMS_MESSAGES = Counter(
    "sms_messages_total",
    "SMS messages handled",
    ["direction", "status"],
)


# --- Middleware ---

# Numeric path segments collapse to {id} to keep label cardinality bounded
_ID_SEGMENT = re.compile(r"/\d+(?=/|$)")


def _normalize_path(path: str) -> str:
    return _ID_SEGMENT.sub("/{id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

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
