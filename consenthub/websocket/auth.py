"""WebSocket authentication - validates JWT from query param or first message.

Authentication flow:
1. Check for ?token=<jwt> in query string (fast path for browsers).
2. If absent, wait for first WebSocket message: {"type": "auth", "token": "<jwt>"}.
3. Validate the JWT using the same validate_token() used by HTTP endpoints.
4. On failure, close the socket with code 4001 and return None.

The close code 4001 is in the application-defined range (4000-4999) and
signals to clients that re-authentication is required.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from starlette.websockets import WebSocketDisconnect

from consenthub.auth.dependencies import AuthenticatedUser
from consenthub.auth.oidc import TokenValidationError, validate_token
from consenthub.config import Settings
from consenthub.core.exceptions import UnauthorizedError

if TYPE_CHECKING:
    from starlette.websockets import WebSocket

log = structlog.get_logger(__name__)

WS_CLOSE_UNAUTHORIZED = 4001


async def authenticate_websocket(
    websocket: WebSocket,
    *,
    settings: Settings,
) -> AuthenticatedUser | None:
    """Authenticate an accepted WebSocket and return the caller.

    Returns None on failure; the socket has then already been closed.
    """
    token = websocket.query_params.get("token")

    if not token:
        try:
            first_msg = await websocket.receive_json()
        except WebSocketDisconnect:
            return None
        except ValueError as exc:
            log.warning("ws.auth_receive_failed", error=str(exc))
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
            return None

        if not isinstance(first_msg, dict) or first_msg.get("type") != "auth":
            log.warning(
                "ws.auth_invalid_first_message",
                msg_type=first_msg.get("type") if isinstance(first_msg, dict) else None,
            )
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
            return None

        token = first_msg.get("token", "")

    if not token:
        log.warning("ws.auth_missing_token")
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return None

    try:
        claims = await validate_token(token, settings)
        user = AuthenticatedUser.from_claims(claims)
    except (TokenValidationError, UnauthorizedError) as exc:
        log.warning("ws.auth_token_invalid", error=str(exc))
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return None

    log.info("ws.auth_success", user_id=user.user_id, role=user.role.value)
    return user
