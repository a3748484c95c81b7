"""WebSocket ConnectionManager - fans DSAR domain events out to browsers.

Design:
- One instance per app, created in create_app() and kept on app.state.
- Single-threaded asyncio; no locks needed.
- Indexes maintained in parallel:
    1. _connections: WebSocket -> _ConnectionMeta (primary reverse lookup)
    2. _by_user: user_id -> set[WebSocket]
    3. _staff: sockets of csr/admin users, who see every event
- A forwarder task drains one EventBus subscription and routes each event
  to the requester's own sockets plus all staff sockets.

Usage:
    manager = ConnectionManager()
    await manager.start(event_bus)

    await manager.connect(websocket, user_id="cust-1", role=Role.CUSTOMER)
    ...
    await manager.disconnect(websocket)

    await manager.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from consenthub.core.policy import Permission, Role, has_permission
from consenthub.events.bus import DomainEvent, EventBus, Subscription
from consenthub.middleware.prometheus import websocket_connections

if TYPE_CHECKING:
    from starlette.websockets import WebSocket

log = structlog.get_logger(__name__)


@dataclass
class _ConnectionMeta:
    user_id: str
    role: Role


class ConnectionManager:
    def __init__(self) -> None:
        self._connections: dict[Any, _ConnectionMeta] = {}
        self._by_user: dict[str, set[Any]] = {}
        self._staff: set[Any] = set()
        self._bus: EventBus | None = None
        self._subscription: Subscription | None = None
        self._forwarder: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------ #
    # Event bus wiring
    # ------------------------------------------------------------------ #

    async def start(self, bus: EventBus) -> None:
        """Subscribe to ``bus`` and begin forwarding events to sockets."""
        if self._forwarder is not None:
            return
        self._bus = bus
        self._subscription = bus.subscribe()
        self._forwarder = asyncio.create_task(
            self._forward(self._subscription), name="ws-event-forwarder"
        )
        log.info("ws.forwarder_started")

    async def stop(self) -> None:
        if self._forwarder is not None:
            self._forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._forwarder
            self._forwarder = None
        if self._bus is not None and self._subscription is not None:
            self._bus.unsubscribe(self._subscription)
        self._bus = None
        self._subscription = None
        log.info("ws.forwarder_stopped")

    async def _forward(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.get()
            await self.dispatch(event)

    # ------------------------------------------------------------------ #
    # Connection lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self, websocket: WebSocket, *, user_id: str, role: Role) -> None:
        """Register an already-accepted, authenticated WebSocket."""
        self._connections[websocket] = _ConnectionMeta(user_id=user_id, role=role)
        self._by_user.setdefault(user_id, set()).add(websocket)
        if has_permission(role, Permission.DSAR_READ_ALL):
            self._staff.add(websocket)
        websocket_connections.inc()

        log.info(
            "ws.connected",
            user_id=user_id,
            role=role.value,
            total_connections=len(self._connections),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket and clean up all indexes. No-op if unknown."""
        meta = self._connections.pop(websocket, None)
        if meta is None:
            return

        user_sockets = self._by_user.get(meta.user_id)
        if user_sockets is not None:
            user_sockets.discard(websocket)
            if not user_sockets:
                del self._by_user[meta.user_id]
        self._staff.discard(websocket)
        websocket_connections.dec()

        log.info(
            "ws.disconnected",
            user_id=meta.user_id,
            total_connections=len(self._connections),
        )

    # ------------------------------------------------------------------ #
    # Sends
    # ------------------------------------------------------------------ #

    async def dispatch(self, event: DomainEvent) -> int:
        """Deliver ``event`` to its requester and to all staff.

        Returns the number of sockets targeted.
        """
        targets = set(self._staff)
        targets |= self._by_user.get(event.requester_id, set())
        await self._send_all(targets, {"type": "event", "event": event.to_dict()})
        log.debug(
            "ws.event_dispatched",
            event_type=event.type,
            request_id=event.request_id,
            targets=len(targets),
        )
        return len(targets)

    async def _send_all(self, sockets: set[Any], message: dict[str, Any]) -> None:
        """Send to a set of sockets; one dead socket never blocks the others.

        Dead connections are cleaned up by the endpoint's disconnect().
        """
        if not sockets:
            return
        await asyncio.gather(
            *(_safe_send_json(ws, message) for ws in list(sockets)),
            return_exceptions=True,
        )

    def connection_count(self) -> int:
        return len(self._connections)


async def _safe_send_json(websocket: WebSocket, message: dict[str, Any]) -> None:
    """Send JSON to a WebSocket, logging but not re-raising on failure."""
    try:
        await websocket.send_json(message)
    except Exception as exc:
        log.warning("ws.send_failed", error=str(exc))
