"""WebSocket package for real-time DSAR notifications.

Provides:
- ConnectionManager: tracks sockets per user and fans out domain events
- authenticate_websocket: validates JWT from query param or first message
- ws_router: FastAPI router with the /api/v1/ws/dsar endpoint
"""

from consenthub.websocket.manager import ConnectionManager

__all__ = [
    "ConnectionManager",
]
