"""In-process domain event bus.

DSARService publishes an event after every submission and every real
status change. The WebSocket hub subscribes once per app and fans events
out to connected clients.

Design:
- Owned by the app (``app.state.event_bus``), never a module singleton.
- History is a bounded ring buffer (collections.deque with maxlen), so
  memory use is fixed regardless of uptime.
- Each subscriber gets its own bounded asyncio.Queue. When a consumer
  falls behind, the oldest queued event is dropped to make room; the
  publisher never blocks and never raises.

Usage:
    bus = EventBus(history_size=500, queue_size=100)
    sub = bus.subscribe()
    bus.publish(DomainEvent(type="dsar.submitted", request_id=..., ...))
    event = await sub.get()
    bus.unsubscribe(sub)
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

log = structlog.get_logger(__name__)

DSAR_SUBMITTED = "dsar.submitted"
DSAR_STATUS_CHANGED = "dsar.status_changed"


@dataclass(frozen=True)
class DomainEvent:
    type: str
    request_id: str
    requester_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "requestId": self.request_id,
            "requesterId": self.requester_id,
            "occurredAt": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class Subscription:
    """One consumer's bounded view of the event stream."""

    def __init__(self, queue_size: int) -> None:
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0

    def offer(self, event: DomainEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> DomainEvent:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()


class EventBus:
    def __init__(self, history_size: int = 500, queue_size: int = 100) -> None:
        if history_size < 1 or queue_size < 1:
            raise ValueError("history_size and queue_size must be positive")
        self._history: deque[DomainEvent] = deque(maxlen=history_size)
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self._queue_size)
        self._subscribers.add(sub)
        log.debug("events.subscribed", subscribers=len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        log.debug("events.unsubscribed", subscribers=len(self._subscribers))

    def publish(self, event: DomainEvent) -> None:
        """Record ``event`` and hand it to every subscriber without blocking."""
        self._history.append(event)
        for sub in tuple(self._subscribers):
            sub.offer(event)
        log.info(
            "events.published",
            event_type=event.type,
            request_id=event.request_id,
            subscribers=len(self._subscribers),
        )

    def recent(self, limit: int | None = None, *, request_id: str | None = None) -> list[DomainEvent]:
        """Return buffered events, oldest first, optionally for one request."""
        events = [e for e in self._history if request_id is None or e.request_id == request_id]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
