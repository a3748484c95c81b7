"""Telemetry package for observability.

This package contains:
- Structured logging with request correlation
- Prometheus metrics (in consenthub/middleware/prometheus.py)
"""

from __future__ import annotations

from consenthub.telemetry.logging import (
    RequestIdMiddleware,
    bind_dsar_context,
    bind_user_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_dsar_context",
    "bind_user_context",
    "clear_context",
    "configure_logging",
]
