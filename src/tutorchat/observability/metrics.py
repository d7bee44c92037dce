from __future__ import annotations

"""Prometheus metrics for the tutor chat backend.

Adds an HTTP middleware that records request latency per method/path/status,
and the counters the chat gateway updates as connections come and go.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "tutorchat_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

ACTIVE_CONNECTIONS = Gauge(
    "tutorchat_active_connections",
    "Authenticated chat connections currently registered",
)

AUTH_FAILURES = Counter(
    "tutorchat_auth_failures_total",
    "Chat connections rejected during the handshake",
)

INBOUND_EVENTS_TOTAL = Counter(
    "tutorchat_inbound_events_total",
    "Inbound chat events by name",
    labelnames=("event",),
)

GENERATION_LATENCY = Histogram(
    "tutorchat_generation_latency_seconds",
    "Time spent waiting on the response generator",
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 40.0, 60.0, 120.0),
)

GENERATION_FAILURES = Counter(
    "tutorchat_generation_failures_total",
    "Chat messages answered with an error instead of a response",
)

PERSISTENCE_FAILURES = Counter(
    "tutorchat_persistence_failures_total",
    "History store operations that failed",
    labelnames=("operation",),
)

CHUNKS_EMITTED = Counter(
    "tutorchat_chunks_emitted_total",
    "ai_message_chunk events delivered to clients",
)


def record_persistence_failure(operation: str) -> None:
    try:
        PERSISTENCE_FAILURES.labels(operation=operation).inc()
    except Exception:
        pass


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /chat/sessions/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            # Never block the request due to metrics
            pass
        return response

    return middleware
