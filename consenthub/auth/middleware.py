"""JWT validation middleware.

Runs before any route handler and:
1. Extracts the Bearer token from the Authorization header
2. Validates the token via the OIDC module
3. Injects the validated claims into request.state.auth_claims
4. Binds user_id / role into the structlog context

Routes that need authentication use the FastAPI dependencies in
dependencies.py (get_current_user, require_permission). This middleware
only makes the claims available; it never answers 401 itself, because
some routes (health, metrics, docs) are public.
"""

from __future__ import annotations

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from consenthub.auth.oidc import TokenValidationError, validate_token
from consenthub.config import Settings, get_settings
from consenthub.telemetry.logging import bind_user_context

log = structlog.get_logger(__name__)

# Routes that are always public - skip token extraction entirely
_PUBLIC_PREFIXES = (
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def _app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


class AuthMiddleware(BaseHTTPMiddleware):
    """Validate the bearer JWT, if any, and stash its claims on request.state.

    On success: request.state.auth_claims is the claims dict.
    On failure or missing token: request.state.auth_claims is None.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.auth_claims = None

        if any(request.url.path.startswith(prefix) for prefix in _PUBLIC_PREFIXES):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return await call_next(request)

        token = auth_header.removeprefix("Bearer ").strip()
        try:
            claims = await validate_token(token, _app_settings(request))
        except TokenValidationError as exc:
            log.warning("auth.token_invalid", error=str(exc))
        else:
            request.state.auth_claims = claims
            bind_user_context(str(claims["sub"]), str(claims["role"]))
            log.debug("auth.token_validated", sub=claims["sub"], role=claims["role"])

        return await call_next(request)
