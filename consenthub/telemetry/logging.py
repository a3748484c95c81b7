"""Structured logging configuration.

Configures structlog with JSON output in production and a rich console
renderer in development.

Features:
- Request ID propagation through RequestIdMiddleware (X-Request-ID header)
- User ID and role in every log entry once the caller is authenticated
- ISO8601 UTC timestamps
- Stack traces for exceptions

Log format (production):
    {
        "timestamp": "2026-03-02T10:30:45.123456Z",
        "level": "info",
        "event": "dsar.status_changed",
        "logger": "consenthub.dsar.service",
        "request_id": "req_789...",
        "user_id": "csr-42",
        "role": "csr",
        "dsar_request_id": "DSAR-1709375445123-K3J9QZ",
        "old_status": "pending",
        "new_status": "in_progress"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any

import structlog
from structlog.types import Processor

REQUEST_ID_HEADER = b"x-request-id"


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request ID Middleware
# ------------------------------------------------------------------ #


class RequestIdMiddleware:
    """Pure ASGI middleware that assigns every HTTP request an ID.

    An incoming ``X-Request-ID`` header is reused so IDs can be correlated
    across the frontend and any proxy; otherwise a fresh ``req_<hex>`` is
    generated. The ID is bound into structlog contextvars and echoed back
    on the response.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or f"req_{uuid.uuid4().hex[:16]}"

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((REQUEST_ID_HEADER, request_id.encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_request_id)


def _incoming_request_id(scope: dict[str, Any]) -> str | None:
    for name, value in scope.get("headers", []):
        if name == REQUEST_ID_HEADER:
            candidate = value.decode("latin-1").strip()
            # Bound the length; the value ends up in every log line
            if 0 < len(candidate) <= 128:
                return candidate
    return None


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_user_context(user_id: str, role: str) -> None:
    """Bind the authenticated caller to the log context for this request."""
    structlog.contextvars.bind_contextvars(user_id=user_id, role=role)


def bind_dsar_context(request_id: str) -> None:
    structlog.contextvars.bind_contextvars(dsar_request_id=request_id)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
