"""Domain error taxonomy.

Services raise these; the exception handlers registered in main.py turn
them into the ``{"success": false, ...}`` envelope with the matching
HTTP status. Nothing here is retried automatically.
"""

from __future__ import annotations

from typing import Any


class ConsentHubError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        body.update(self.details)
        return body


class ValidationError(ConsentHubError):
    """Malformed or out-of-enumeration input.

    ``fields`` names the offending input fields so clients can highlight them.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        super().__init__(message, fields=list(fields or []))
        self.fields = list(fields or [])


class NotFoundError(ConsentHubError):
    status_code = 404
    error_code = "not_found"


class UnauthorizedError(ConsentHubError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ConsentHubError):
    status_code = 403
    error_code = "forbidden"


class ConflictError(ConsentHubError):
    """Write was based on a stale version of the record."""

    status_code = 409
    error_code = "conflict"


class PersistenceError(ConsentHubError):
    """The store was unavailable or rejected the write."""

    status_code = 500
    error_code = "persistence_error"
