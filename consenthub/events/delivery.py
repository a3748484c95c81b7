"""Transactional hand-off of domain events to the bus.

Services queue events on the session they wrote through with
publish_after_commit(). Session hooks deliver the queue to the bus once
the transaction commits and drop it if the transaction rolls back, so
subscribers only ever hear about changes that were persisted.
"""

from __future__ import annotations

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from consenthub.events.bus import DomainEvent, EventBus

log = structlog.get_logger(__name__)

_PENDING_KEY = "consenthub.pending_events"


def publish_after_commit(db: AsyncSession, bus: EventBus, domain_event: DomainEvent) -> None:
    db.sync_session.info.setdefault(_PENDING_KEY, []).append((bus, domain_event))


def pending_events(db: AsyncSession) -> list[DomainEvent]:
    """Events queued on ``db`` that have not been delivered yet."""
    return [e for _, e in db.sync_session.info.get(_PENDING_KEY, [])]


@event.listens_for(Session, "after_commit")
def _deliver_pending(session: Session) -> None:
    for bus, domain_event in session.info.pop(_PENDING_KEY, []):
        bus.publish(domain_event)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session: Session) -> None:
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        log.warning(
            "events.discarded_on_rollback",
            count=len(dropped),
            event_types=[e.type for _, e in dropped],
        )
