"""Due-date / overdue calculator.

Derived SLA fields are a pure function of stored dates and the current
time. They are recomputed on every read and never persisted.

    isOverdue       status != completed and now > dueDate
    daysRemaining   0 when completed, else ceil((dueDate - now) / 1 day)
    processingDays  floor(((completedAt or now) - submittedAt) / 1 day)

Rejected and cancelled requests past their due date still report
isOverdue=True; only completion stops the clock.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from consenthub.dsar.enums import RequestStatus

_DAY_SECONDS = timedelta(days=1).total_seconds()


@dataclass(frozen=True)
class SLAMetrics:
    is_overdue: bool
    days_remaining: int
    processing_days: int


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def compute_due_date(submitted_at: datetime, response_days: int = 30) -> datetime:
    return as_utc(submitted_at) + timedelta(days=response_days)


def compute_sla(
    status: str,
    due_date: datetime,
    submitted_at: datetime,
    completed_at: datetime | None,
    now: datetime,
) -> SLAMetrics:
    """Derive isOverdue / daysRemaining / processingDays for one record."""
    now = as_utc(now)
    due = as_utc(due_date)
    submitted = as_utc(submitted_at)
    completed = status == RequestStatus.COMPLETED

    is_overdue = not completed and now > due

    if completed:
        days_remaining = 0
    else:
        days_remaining = math.ceil((due - now).total_seconds() / _DAY_SECONDS)

    end = as_utc(completed_at) if completed_at is not None else now
    processing_days = math.floor((end - submitted).total_seconds() / _DAY_SECONDS)

    return SLAMetrics(
        is_overdue=is_overdue,
        days_remaining=days_remaining,
        processing_days=processing_days,
    )
