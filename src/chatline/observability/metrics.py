from __future__ import annotations

"""Prometheus metrics for the chat backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus realtime and upstream counters updated by the engine and the proxy.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "chatline_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

REALTIME_CONNECTIONS = Gauge(
    "chatline_realtime_connections",
    "Currently open realtime connections",
)

REALTIME_EVENTS = Counter(
    "chatline_realtime_events_total",
    "Realtime events handled, by event name",
    labelnames=("event",),
)

UPSTREAM_ATTEMPTS = Counter(
    "chatline_upstream_attempts_total",
    "Generation API attempts, by outcome",
    labelnames=("outcome",),
)


def sanitize_path(path: str) -> str:
    """Reduce a request path to its first segment, skipping the /api prefix."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def _observe(method: str, path: str, status: int, elapsed: float) -> None:
    try:
        REQUEST_LATENCY.labels(method=method, path=sanitize_path(path), status=str(status)).observe(elapsed)
    except ValueError:
        pass


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        path = request.url.path
        if path.endswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            # Unhandled errors are recorded as 500
            _observe(request.method, path, status, time.perf_counter() - start)

    return middleware
