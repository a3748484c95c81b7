"""Middleware package for request processing.

This package contains:
- PrometheusMiddleware: Prometheus metrics export
"""

from __future__ import annotations

from consenthub.middleware.prometheus import (
    PrometheusMiddleware,
    get_metrics,
    record_dsar_submitted,
    record_dsar_transition,
    record_http_request,
)

__all__ = [
    "PrometheusMiddleware",
    "get_metrics",
    "record_dsar_submitted",
    "record_dsar_transition",
    "record_http_request",
]
