"""Status transition engine for DSAR records.

The transition model is open: any status may move to any other status.
What the engine enforces are the side effects:

1. Entering ``in_progress`` stamps ``acknowledged_at`` if it is unset.
2. Entering ``completed`` stamps ``completed_at`` if it is unset.
3. Existing stamps are never overwritten, so repeated transitions are
   idempotent on those fields.
4. ``rejected`` must carry a rejection reason; rejection fields are not
   accepted for any other status and are cleared when a request leaves
   ``rejected``.
5. A real change (old != new) appends a status-history row; a supplied
   note appends a processing note.

All validation happens before the record is touched, so a rejected
transition leaves the record exactly as it was.

The engine only mutates the in-memory ORM object. Flushing, events and
metrics belong to DSARService.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from consenthub.core.exceptions import ValidationError
from consenthub.dsar.enums import RejectionReason, RequestStatus
from consenthub.models.dsar_request import DSARProcessingNote, DSARRequest, DSARStatusChange


@dataclass(frozen=True)
class TransitionResult:
    old_status: RequestStatus
    new_status: RequestStatus
    acknowledged: bool  # acknowledged_at was stamped by this call
    completed: bool  # completed_at was stamped by this call

    @property
    def changed(self) -> bool:
        return self.old_status != self.new_status


def parse_status(value: str) -> RequestStatus:
    try:
        return RequestStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in RequestStatus)
        raise ValidationError(
            f"Invalid status {value!r}; expected one of: {allowed}",
            fields=["status"],
        ) from None


def _parse_rejection_reason(value: str) -> RejectionReason:
    try:
        return RejectionReason(value)
    except ValueError:
        allowed = ", ".join(r.value for r in RejectionReason)
        raise ValidationError(
            f"Invalid rejectionReason {value!r}; expected one of: {allowed}",
            fields=["rejectionReason"],
        ) from None


def apply_status_transition(
    record: DSARRequest,
    new_status: str,
    *,
    now: datetime,
    note: str | None = None,
    author: str | None = None,
    rejection_reason: str | None = None,
    rejection_details: str | None = None,
) -> TransitionResult:
    """Move ``record`` to ``new_status`` and apply the mandatory side effects.

    Raises:
        ValidationError: unknown status, bad rejection pairing, or empty note.
    """
    target = parse_status(new_status)
    old = RequestStatus(record.status)

    if note is not None and not note.strip():
        raise ValidationError("note cannot be empty", fields=["note"])

    reason: RejectionReason | None = None
    if target == RequestStatus.REJECTED:
        raw_reason = rejection_reason or record.rejection_reason
        if not raw_reason:
            raise ValidationError(
                "rejectionReason is required when rejecting a request",
                fields=["rejectionReason"],
            )
        reason = _parse_rejection_reason(raw_reason)
    elif rejection_reason is not None or rejection_details is not None:
        raise ValidationError(
            "rejectionReason/rejectionDetails are only accepted with status 'rejected'",
            fields=[
                f
                for f, v in (
                    ("rejectionReason", rejection_reason),
                    ("rejectionDetails", rejection_details),
                )
                if v is not None
            ],
        )

    # -- mutate ---------------------------------------------------------
    record.status = target.value

    acknowledged = False
    if target == RequestStatus.IN_PROGRESS and record.acknowledged_at is None:
        record.acknowledged_at = now
        acknowledged = True

    completed = False
    if target == RequestStatus.COMPLETED and record.completed_at is None:
        record.completed_at = now
        completed = True

    if target == RequestStatus.REJECTED:
        record.rejection_reason = reason.value if reason else None
        if rejection_details is not None:
            record.rejection_details = rejection_details
    elif old == RequestStatus.REJECTED:
        record.rejection_reason = None
        record.rejection_details = None

    if target != old:
        record.status_changes.append(
            DSARStatusChange(
                from_status=old.value,
                to_status=target.value,
                changed_by=author,
                changed_at=now,
            )
        )

    if note is not None:
        record.processing_notes.append(
            DSARProcessingNote(note=note, author=author, timestamp=now)
        )

    return TransitionResult(
        old_status=old,
        new_status=target,
        acknowledged=acknowledged,
        completed=completed,
    )
