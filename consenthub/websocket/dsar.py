"""WebSocket DSAR notifications - ws /api/v1/ws/dsar

Pushes DSAR domain events (submissions and status changes) to connected
dashboards so they no longer need to poll and diff the request list.

Connection lifecycle:
1. Client connects to ws://host/api/v1/ws/dsar[?token=<jwt>]
2. authenticate_websocket() validates the token (query param or first message)
3. Connection is registered with the app's ConnectionManager
4. Server pushes events; the client may send keepalives
5. On disconnect, the connection is removed from the manager

Client -> Server message types:
    {"type": "ping"}                   - keepalive, answered with {"type": "pong"}
    {"type": "auth", "token": "..."}   - initial auth (if token not in query param)

Server -> Client message types:
    {"type": "connected", "userId": "...", "role": "..."}
    {"type": "event", "event": {"type": "dsar.status_changed", "requestId": ..., ...}}
    {"type": "pong"}
    {"type": "error", "message": "..."}

Visibility: customers receive events for their own requests only; csr and
admin users receive every event.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from consenthub.config import Settings, get_settings
from consenthub.websocket.auth import authenticate_websocket
from consenthub.websocket.manager import ConnectionManager

log = structlog.get_logger(__name__)

ws_router = APIRouter(prefix="/api/v1/ws", tags=["websocket"])


@ws_router.websocket("/dsar")
async def ws_dsar(websocket: WebSocket) -> None:
    settings: Settings = getattr(websocket.app.state, "settings", None) or get_settings()
    manager: ConnectionManager = websocket.app.state.ws_manager

    await websocket.accept()

    user = await authenticate_websocket(websocket, settings=settings)
    if user is None:
        # Already closed with 4001
        return

    await manager.connect(websocket, user_id=user.user_id, role=user.role)
    try:
        await websocket.send_json(
            {"type": "connected", "userId": user.user_id, "role": user.role.value}
        )
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            msg_type = message.get("type") if isinstance(message, dict) else None
            if msg_type == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json(
                    {"type": "error", "message": f"Unsupported message type: {msg_type!r}"}
                )
    except WebSocketDisconnect:
        log.debug("ws.client_disconnected", user_id=user.user_id)
    finally:
        await manager.disconnect(websocket)
