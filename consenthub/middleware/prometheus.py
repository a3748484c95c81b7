"""Prometheus metrics endpoint and instrumentation.

Exports metrics in Prometheus exposition format for scraping.

Metrics exported:
- http_requests_total: Counter of HTTP requests by method, endpoint, status
- http_request_duration_seconds: Histogram of HTTP request latencies
- active_connections: Gauge of in-flight HTTP requests
- dsar_requests_submitted_total: Counter of new DSARs by request type
- dsar_status_transitions_total: Counter of real status changes
- websocket_connections: Gauge of open notification sockets

Design:
- Private CollectorRegistry so tests and other exporters never collide
- Middleware captures HTTP metrics automatically
- DSAR metrics are recorded by DSARService at the point of the write
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog
from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

log = structlog.get_logger(__name__)


REGISTRY = CollectorRegistry(auto_describe=True)


# ------------------------------------------------------------------ #
# HTTP Metrics
# ------------------------------------------------------------------ #

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

active_connections = Gauge(
    "active_connections",
    "Number of in-flight HTTP requests",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# DSAR Metrics
# ------------------------------------------------------------------ #

dsar_requests_submitted_total = Counter(
    "dsar_requests_submitted_total",
    "Total DSARs submitted",
    ["request_type"],
    registry=REGISTRY,
)

dsar_status_transitions_total = Counter(
    "dsar_status_transitions_total",
    "Total DSAR status changes",
    ["from_status", "to_status"],
    registry=REGISTRY,
)

websocket_connections = Gauge(
    "websocket_connections",
    "Number of open DSAR notification WebSockets",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Instrumentation Functions
# ------------------------------------------------------------------ #


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics.

    Args:
        method: HTTP method
        endpoint: Route template (or raw path when no route matched)
        status_code: Response status code
        duration_seconds: Request duration in seconds
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status_code),
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
    ).observe(duration_seconds)


def record_dsar_submitted(request_type: str) -> None:
    dsar_requests_submitted_total.labels(request_type=request_type).inc()


def record_dsar_transition(from_status: str, to_status: str) -> None:
    dsar_status_transitions_total.labels(
        from_status=from_status,
        to_status=to_status,
    ).inc()


# ------------------------------------------------------------------ #
# Middleware
# ------------------------------------------------------------------ #


def _endpoint_label(request: Request) -> str:
    # /dsarRequest/{requestId} instead of one series per request id
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        active_connections.inc()
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            record_http_request(
                method=request.method,
                endpoint=_endpoint_label(request),
                status_code=response.status_code,
                duration_seconds=time.perf_counter() - start_time,
            )
            return response

        except Exception:
            record_http_request(
                method=request.method,
                endpoint=_endpoint_label(request),
                status_code=500,
                duration_seconds=time.perf_counter() - start_time,
            )
            raise

        finally:
            active_connections.dec()


# ------------------------------------------------------------------ #
# Metrics Endpoint
# ------------------------------------------------------------------ #


def get_metrics() -> Response:
    """Generate Prometheus metrics in exposition format."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
        status_code=200,
    )
