"""DSAR lifecycle service.

Owns every read and write of DSAR records:

- Submission: validate, assign requestId / dueDate / applicable laws, persist
- Status transitions via the transition engine, plus general and bulk CSR updates
- Notes, communications, assignment and identity verification
- Listing with filters, pagination, sorting and per-status counts
- Overdue report, aggregate statistics, history timeline and export

Transactions are owned by the caller (the FastAPI session dependency
commits or rolls back); this service only flushes so that database errors
surface as domain errors at the point of the write. Metrics are
recorded after a successful flush; domain events are queued on the
session and only reach the bus once the caller commits.

Usage:
    service = DSARService(db, settings, event_bus=bus)
    record = await service.create_request(payload, requester_id=user.user_id)
    record = await service.transition_status(record.request_id, "in_progress", author="csr-1")
"""

from __future__ import annotations

import csv
import io
import json
import math
import secrets
import string
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pydantic
import structlog
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from consenthub.config import Settings, get_settings
from consenthub.core.exceptions import (
    ConflictError,
    ConsentHubError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from consenthub.dsar.enums import (
    JURISDICTION_LAWS,
    OPEN_STATUSES,
    CommunicationDirection,
    CommunicationType,
    Priority,
    RequestStatus,
    VerificationMethod,
    VerificationStatus,
)
from consenthub.dsar.schemas import (
    DSARListQuery,
    DSARRequestCreate,
    DSARRequestOut,
    DSARRequestUpdate,
)
from consenthub.dsar.sla import as_utc, compute_due_date
from consenthub.dsar.transitions import TransitionResult, apply_status_transition
from consenthub.events.bus import (
    DSAR_STATUS_CHANGED,
    DSAR_SUBMITTED,
    DomainEvent,
    EventBus,
)
from consenthub.events.delivery import publish_after_commit
from consenthub.middleware.prometheus import record_dsar_submitted, record_dsar_transition
from consenthub.models.dsar_request import DSARCommunication, DSARProcessingNote, DSARRequest

log = structlog.get_logger(__name__)

_ID_ALPHABET = string.ascii_uppercase + string.digits
_ID_SUFFIX_LENGTH = 6

_PRIORITY_RANK = case(
    {
        Priority.LOW.value: 0,
        Priority.MEDIUM.value: 1,
        Priority.HIGH.value: 2,
        Priority.URGENT.value: 3,
    },
    value=DSARRequest.priority,
    else_=1,
)

SORT_COLUMNS: dict[str, Any] = {
    "submittedAt": DSARRequest.submitted_at,
    "dueDate": DSARRequest.due_date,
    "priority": _PRIORITY_RANK,
    "status": DSARRequest.status,
    "requestType": DSARRequest.request_type,
    "requesterName": DSARRequest.requester_name,
    "updatedAt": DSARRequest.updated_at,
}

EXPORT_FORMATS = ("json", "csv")

_CSV_COLUMNS = (
    "requestId",
    "requesterName",
    "requesterEmail",
    "requestType",
    "subject",
    "status",
    "priority",
    "submittedAt",
    "dueDate",
    "acknowledgedAt",
    "completedAt",
    "assignedTo",
    "jurisdiction",
    "isOverdue",
    "daysRemaining",
    "processingDays",
)


@dataclass
class DSARPage:
    requests: list[DSARRequest]
    total: int
    page: int
    limit: int
    total_pages: int
    stats: dict[str, int]


@dataclass
class HistoryEntry:
    timestamp: datetime
    kind: str
    description: str
    author: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DSARStats:
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_priority: dict[str, int]
    overdue: int
    average_processing_days: float | None
    compliance_rate: float | None


@dataclass
class BulkUpdateResult:
    updated: list[DSARRequest] = field(default_factory=list)
    failed: list[tuple[str, ConsentHubError]] = field(default_factory=list)


@dataclass
class ExportResult:
    content: bytes
    media_type: str
    filename: str
    count: int


def generate_request_id(now: datetime) -> str:
    """Return ``DSAR-<epoch millis>-<6 chars of [A-Z0-9]>``."""
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LENGTH))
    return f"DSAR-{millis}-{suffix}"


def _pydantic_error_fields(exc: pydantic.ValidationError) -> list[str]:
    fields: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        if loc and loc not in fields:
            fields.append(loc)
    return fields


def _parse_model(model: type[pydantic.BaseModel], data: Any) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        fields = _pydantic_error_fields(exc)
        raise ValidationError(
            f"Invalid {', '.join(fields) or 'payload'}",
            fields=fields,
        ) from exc


def _parse_enum(enum_cls: Any, value: str, field_name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(v.value for v in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} {value!r}; expected one of: {allowed}",
            fields=[field_name],
        ) from None


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty", fields=[field_name])
    return value


class DSARService:
    """Data subject access request lifecycle service.

    ``requester_scope`` on the read methods restricts results to records
    whose requesterId equals the given value (used for customers). Records
    outside the scope behave exactly like records that do not exist.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._bus = event_bus
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    async def create_request(
        self,
        data: DSARRequestCreate | Mapping[str, Any],
        *,
        requester_id: str | None = None,
        created_by: str | None = None,
    ) -> DSARRequest:
        """Validate and persist a new request in ``pending`` status.

        ``requester_id`` wins over the payload's own requesterId; when
        neither is given the requester email identifies the subject.

        Raises:
            ValidationError: malformed input; nothing is persisted.
            PersistenceError: the store rejected the write.
        """
        payload: DSARRequestCreate = _parse_model(DSARRequestCreate, data)
        now = self.now()

        jurisdiction = payload.jurisdiction or self._settings.default_jurisdiction
        law = JURISDICTION_LAWS.get(jurisdiction)
        applicable_law = law.value if law else self._settings.default_applicable_law

        record = DSARRequest(
            request_id=generate_request_id(now),
            requester_id=requester_id or payload.requester_id or payload.requester_email,
            requester_name=payload.requester_name,
            requester_email=payload.requester_email,
            requester_phone=payload.requester_phone,
            request_type=payload.request_type.value,
            subject=payload.subject,
            description=payload.description,
            data_categories=[c.value for c in payload.data_categories],
            legal_basis=payload.legal_basis.value if payload.legal_basis else None,
            status=RequestStatus.PENDING.value,
            priority=payload.priority.value,
            submitted_at=now,
            due_date=compute_due_date(now, self._settings.dsar_response_days),
            response_method=payload.response_method.value,
            verification_method=VerificationMethod.EMAIL_VERIFICATION.value,
            verification_status=VerificationStatus.PENDING.value,
            source=payload.source.value,
            customer_type=payload.customer_type.value,
            jurisdiction=jurisdiction,
            applicable_laws=[applicable_law],
            sensitive_data=payload.sensitive_data,
            tags=list(payload.tags),
            related_tickets=[],
            related_cases=[],
            created_by=created_by,
            updated_by=created_by,
            created_at=now,
            updated_at=now,
            processing_notes=[],
            communications=[],
            status_changes=[],
        )
        self._db.add(record)
        await self._flush("create")

        record_dsar_submitted(record.request_type)
        log.info(
            "dsar.submitted",
            dsar_request_id=record.request_id,
            request_type=record.request_type,
            jurisdiction=record.jurisdiction,
            due_date=record.due_date.isoformat(),
        )
        self._publish(
            DSAR_SUBMITTED,
            record,
            {
                "requestType": record.request_type,
                "status": record.status,
                "priority": record.priority,
                "dueDate": as_utc(record.due_date).isoformat(),
            },
        )
        return record

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def get_request(
        self,
        request_id: str,
        *,
        requester_scope: str | None = None,
    ) -> DSARRequest:
        """Fetch one record by its human-readable requestId.

        Raises:
            NotFoundError: unknown id, or outside ``requester_scope``.
        """
        stmt = select(DSARRequest).where(DSARRequest.request_id == request_id)
        if requester_scope is not None:
            stmt = stmt.where(DSARRequest.requester_id == requester_scope)
        try:
            result = await self._db.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load DSAR request") from exc
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"DSAR request {request_id!r} not found")
        return record

    async def list_requests(
        self,
        query: DSARListQuery | Mapping[str, Any] | None = None,
        *,
        requester_scope: str | None = None,
    ) -> DSARPage:
        """Filtered, paginated, sorted listing plus per-status counts.

        ``stats`` counts every status across the caller's whole scope and
        ignores the filters, so dashboard tabs stay stable while filtering.

        Raises:
            ValidationError: page < 1, limit outside 1..max, unknown sortBy.
        """
        q: DSARListQuery = _parse_model(DSARListQuery, query or {})
        limit = q.limit if q.limit is not None else self._settings.dsar_page_size_default
        max_limit = self._settings.dsar_page_size_max
        if q.page < 1:
            raise ValidationError("page must be >= 1", fields=["page"])
        if not 1 <= limit <= max_limit:
            raise ValidationError(f"limit must be between 1 and {max_limit}", fields=["limit"])
        sort_column = SORT_COLUMNS.get(q.sort_by)
        if sort_column is None:
            raise ValidationError(
                f"Invalid sortBy {q.sort_by!r}; expected one of: {', '.join(SORT_COLUMNS)}",
                fields=["sortBy"],
            )

        now = self.now()
        conditions = self._scope_conditions(requester_scope) + self._filter_conditions(q, now)
        order = sort_column.asc() if q.sort_order == "asc" else sort_column.desc()
        tiebreak = DSARRequest.request_id.asc() if q.sort_order == "asc" else DSARRequest.request_id.desc()

        try:
            total = (
                await self._db.execute(
                    select(func.count()).select_from(DSARRequest).where(*conditions)
                )
            ).scalar_one()
            rows = (
                await self._db.execute(
                    select(DSARRequest)
                    .where(*conditions)
                    .order_by(order, tiebreak)
                    .offset((q.page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()
            stats = await self._status_counts(self._scope_conditions(requester_scope))
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to list DSAR requests") from exc

        return DSARPage(
            requests=list(rows),
            total=total,
            page=q.page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
            stats=stats,
        )

    async def list_overdue(self, *, requester_scope: str | None = None) -> list[DSARRequest]:
        """Pending / in-progress records whose due date has passed, oldest due first."""
        stmt = (
            select(DSARRequest)
            .where(
                *self._scope_conditions(requester_scope),
                DSARRequest.status.in_([s.value for s in OPEN_STATUSES]),
                DSARRequest.due_date < self.now(),
            )
            .order_by(DSARRequest.due_date.asc(), DSARRequest.request_id.asc())
        )
        try:
            result = await self._db.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to list overdue DSAR requests") from exc
        return list(result.scalars().all())

    async def get_history(
        self,
        request_id: str,
        *,
        requester_scope: str | None = None,
    ) -> list[HistoryEntry]:
        """Creation, status changes, notes and communications merged by time."""
        record = await self.get_request(request_id, requester_scope=requester_scope)

        entries = [
            HistoryEntry(
                timestamp=as_utc(record.submitted_at),
                kind="created",
                description=f"Request submitted ({record.request_type})",
                author=record.created_by,
                details={"status": RequestStatus.PENDING.value, "source": record.source},
            )
        ]
        entries.extend(
            HistoryEntry(
                timestamp=as_utc(change.changed_at),
                kind="status_change",
                description=f"Status changed from {change.from_status} to {change.to_status}",
                author=change.changed_by,
                details={"fromStatus": change.from_status, "toStatus": change.to_status},
            )
            for change in record.status_changes
        )
        entries.extend(
            HistoryEntry(
                timestamp=as_utc(note.timestamp),
                kind="note",
                description=note.note,
                author=note.author,
            )
            for note in record.processing_notes
        )
        entries.extend(
            HistoryEntry(
                timestamp=as_utc(comm.timestamp),
                kind="communication",
                description=comm.content,
                author=comm.author,
                details={"type": comm.type, "direction": comm.direction},
            )
            for comm in record.communications
        )
        # sort() is stable: same-instant entries keep the order built above
        entries.sort(key=lambda e: e.timestamp)
        return entries

    async def get_stats(
        self,
        *,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        requester_scope: str | None = None,
    ) -> DSARStats:
        """Aggregate counts plus processing-time and compliance figures.

        ``from_date`` / ``to_date`` (inclusive) restrict every figure to
        requests submitted in that window, for period compliance reports.
        ``overdue`` counts pending / in-progress records past their due
        date. ``compliance_rate`` is the share of completed requests that
        were completed on or before their due date (None when nothing has
        completed yet).
        """
        if from_date is not None and to_date is not None and as_utc(from_date) > as_utc(to_date):
            raise ValidationError("fromDate must not be after toDate", fields=["fromDate", "toDate"])
        scope = self._scope_conditions(requester_scope)
        if from_date is not None:
            scope.append(DSARRequest.submitted_at >= as_utc(from_date))
        if to_date is not None:
            scope.append(DSARRequest.submitted_at <= as_utc(to_date))
        now = self.now()
        try:
            by_status = await self._status_counts(scope)
            by_type = await self._grouped_counts(DSARRequest.request_type, scope)
            by_priority = await self._grouped_counts(DSARRequest.priority, scope)
            overdue = (
                await self._db.execute(
                    select(func.count())
                    .select_from(DSARRequest)
                    .where(
                        *scope,
                        DSARRequest.status.in_([s.value for s in OPEN_STATUSES]),
                        DSARRequest.due_date < now,
                    )
                )
            ).scalar_one()
            completed_rows = (
                await self._db.execute(
                    select(
                        DSARRequest.submitted_at,
                        DSARRequest.completed_at,
                        DSARRequest.due_date,
                    ).where(
                        *scope,
                        DSARRequest.status == RequestStatus.COMPLETED.value,
                        DSARRequest.completed_at.is_not(None),
                    )
                )
            ).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to compute DSAR statistics") from exc

        average: float | None = None
        compliance: float | None = None
        if completed_rows:
            durations = [
                (as_utc(done) - as_utc(submitted)).total_seconds() / 86400
                for submitted, done, _ in completed_rows
            ]
            average = round(sum(durations) / len(durations), 2)
            on_time = sum(1 for _, done, due in completed_rows if as_utc(done) <= as_utc(due))
            compliance = round(on_time / len(completed_rows) * 100, 2)

        return DSARStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            by_priority=by_priority,
            overdue=overdue,
            average_processing_days=average,
            compliance_rate=compliance,
        )

    async def export(
        self,
        query: DSARListQuery | Mapping[str, Any] | None = None,
        *,
        fmt: str = "json",
        requester_scope: str | None = None,
    ) -> ExportResult:
        """Serialise every record matching the filters (no pagination)."""
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(
                f"Invalid format {fmt!r}; expected one of: {', '.join(EXPORT_FORMATS)}",
                fields=["format"],
            )
        q: DSARListQuery = _parse_model(DSARListQuery, query or {})
        sort_column = SORT_COLUMNS.get(q.sort_by)
        if sort_column is None:
            raise ValidationError(f"Invalid sortBy {q.sort_by!r}", fields=["sortBy"])

        now = self.now()
        order = sort_column.asc() if q.sort_order == "asc" else sort_column.desc()
        stmt = (
            select(DSARRequest)
            .where(*self._scope_conditions(requester_scope), *self._filter_conditions(q, now))
            .order_by(order, DSARRequest.request_id.asc())
        )
        try:
            records = list((await self._db.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to export DSAR requests") from exc

        rows = [DSARRequestOut.from_record(r, now) for r in records]
        stamp = now.strftime("%Y%m%dT%H%M%SZ")
        log.info("dsar.exported", format=fmt, count=len(rows))

        if fmt == "csv":
            output = io.StringIO()
            writer = csv.writer(output)
            writer.writerow(_CSV_COLUMNS)
            for row in rows:
                writer.writerow(
                    [
                        row.request_id,
                        row.requester_name,
                        row.requester_email,
                        row.request_type,
                        row.subject,
                        row.status,
                        row.priority,
                        row.submitted_at.isoformat(),
                        row.due_date.isoformat(),
                        row.acknowledged_at.isoformat() if row.acknowledged_at else "",
                        row.completed_at.isoformat() if row.completed_at else "",
                        row.assigned_to.user_id if row.assigned_to else "",
                        row.jurisdiction,
                        str(row.is_overdue).lower(),
                        row.days_remaining,
                        row.processing_days,
                    ]
                )
            return ExportResult(
                content=output.getvalue().encode("utf-8"),
                media_type="text/csv",
                filename=f"dsar_requests_{stamp}.csv",
                count=len(rows),
            )

        body = {
            "exportedAt": now.isoformat(),
            "count": len(rows),
            "requests": [r.model_dump(mode="json", by_alias=True) for r in rows],
        }
        return ExportResult(
            content=json.dumps(body, indent=2).encode("utf-8"),
            media_type="application/json",
            filename=f"dsar_requests_{stamp}.json",
            count=len(rows),
        )

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def transition_status(
        self,
        request_id: str,
        new_status: str,
        *,
        note: str | None = None,
        author: str | None = None,
        rejection_reason: str | None = None,
        rejection_details: str | None = None,
        expected_version: int | None = None,
        requester_scope: str | None = None,
    ) -> DSARRequest:
        record = await self.get_request(request_id, requester_scope=requester_scope)
        self._check_version(record, expected_version)
        now = self.now()
        result = apply_status_transition(
            record,
            new_status,
            now=now,
            note=note,
            author=author,
            rejection_reason=rejection_reason,
            rejection_details=rejection_details,
        )
        self._touch(record, author, now)
        await self._flush("transition")
        self._after_transition(record, result, author)
        return record

    async def update_request(
        self,
        request_id: str,
        changes: DSARRequestUpdate | Mapping[str, Any],
        *,
        author: str | None = None,
        requester_scope: str | None = None,
    ) -> DSARRequest:
        """General CSR update.

        Status, rejection fields and the optional note go through the
        transition engine (with the current status when none is given), so
        the same rules apply as for a plain transition. The remaining
        fields are plain overwrites.

        Raises:
            ValidationError: invalid field values or rejection pairing.
            ConflictError: ``expectedVersion`` no longer matches.
        """
        update: DSARRequestUpdate = _parse_model(DSARRequestUpdate, changes)
        record = await self.get_request(request_id, requester_scope=requester_scope)
        self._check_version(record, update.expected_version)
        now = self.now()

        result: TransitionResult | None = None
        touches_status = (
            update.status is not None
            or update.note is not None
            or update.rejection_reason is not None
            or update.rejection_details is not None
        )
        if touches_status:
            target = update.status.value if update.status else record.status
            result = apply_status_transition(
                record,
                target,
                now=now,
                note=update.note,
                author=author,
                rejection_reason=update.rejection_reason.value if update.rejection_reason else None,
                rejection_details=update.rejection_details,
            )

        if update.priority is not None:
            record.priority = update.priority.value
        if update.response_data is not None:
            record.response_data = update.response_data.model_dump(
                mode="json", by_alias=True, exclude_none=True
            )
        if update.risk_level is not None:
            record.risk_level = update.risk_level.value
        if update.sensitive_data is not None:
            record.sensitive_data = update.sensitive_data
        if update.tags is not None:
            record.tags = list(update.tags)
        if update.related_tickets is not None:
            record.related_tickets = list(update.related_tickets)
        if update.related_cases is not None:
            record.related_cases = list(update.related_cases)

        self._touch(record, author, now)
        await self._flush("update")
        log.info(
            "dsar.updated",
            dsar_request_id=record.request_id,
            fields=sorted(update.model_dump(exclude_none=True, exclude={"expected_version"})),
        )
        if result is not None:
            self._after_transition(record, result, author)
        return record

    async def bulk_update(
        self,
        request_ids: list[str],
        changes: DSARRequestUpdate | Mapping[str, Any],
        *,
        author: str | None = None,
    ) -> BulkUpdateResult:
        """Apply one update to several requests.

        Every id goes through update_request(). Per-record failures (unknown
        id, invalid transition) are collected and the remaining ids are
        still processed; a failed id is left untouched because validation
        happens before any field is written. Store-level failures abort the
        whole batch.

        Raises:
            ValidationError: empty id list, invalid update, or expectedVersion
                (a single version cannot describe several records).
        """
        update: DSARRequestUpdate = _parse_model(DSARRequestUpdate, changes)
        if update.expected_version is not None:
            raise ValidationError(
                "expectedVersion is not supported for bulk updates",
                fields=["expectedVersion"],
            )
        ids = list(dict.fromkeys(request_ids))
        if not ids:
            raise ValidationError("requestIds cannot be empty", fields=["requestIds"])

        result = BulkUpdateResult()
        for request_id in ids:
            try:
                record = await self.update_request(request_id, update, author=author)
            except (NotFoundError, ValidationError) as exc:
                result.failed.append((request_id, exc))
                continue
            result.updated.append(record)

        log.info(
            "dsar.bulk_updated",
            requested=len(ids),
            updated=len(result.updated),
            failed=len(result.failed),
        )
        return result

    async def add_note(self, request_id: str, note: str, *, author: str | None = None) -> DSARRequest:
        text = _require_text(note, "note")
        record = await self.get_request(request_id)
        now = self.now()
        record.processing_notes.append(DSARProcessingNote(note=text, author=author, timestamp=now))
        self._touch(record, author, now)
        await self._flush("add_note")
        log.info(
            "dsar.note_added",
            dsar_request_id=record.request_id,
            notes=len(record.processing_notes),
        )
        return record

    async def add_communication(
        self,
        request_id: str,
        *,
        type: str,
        direction: str,
        content: str,
        author: str | None = None,
    ) -> DSARRequest:
        comm_type = _parse_enum(CommunicationType, type, "type")
        comm_direction = _parse_enum(CommunicationDirection, direction, "direction")
        text = _require_text(content, "content")
        record = await self.get_request(request_id)
        now = self.now()
        record.communications.append(
            DSARCommunication(
                type=comm_type.value,
                direction=comm_direction.value,
                content=text,
                author=author,
                timestamp=now,
            )
        )
        self._touch(record, author, now)
        await self._flush("add_communication")
        log.info(
            "dsar.communication_added",
            dsar_request_id=record.request_id,
            type=comm_type.value,
            direction=comm_direction.value,
        )
        return record

    async def assign(
        self,
        request_id: str,
        user_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        author: str | None = None,
    ) -> DSARRequest:
        """Set (or overwrite) the responsible staff member."""
        assignee = _require_text(user_id, "userId")
        record = await self.get_request(request_id)
        now = self.now()
        previous = record.assigned_user_id
        record.assigned_user_id = assignee
        record.assigned_name = name
        record.assigned_email = email
        record.assigned_at = now
        self._touch(record, author, now)
        await self._flush("assign")
        log.info(
            "dsar.assigned",
            dsar_request_id=record.request_id,
            assignee=assignee,
            previous_assignee=previous,
        )
        return record

    async def update_verification(
        self,
        request_id: str,
        verification_status: str,
        *,
        method: str | None = None,
        verified_by: str | None = None,
    ) -> DSARRequest:
        """Record the outcome of identity verification.

        Moving to ``verified`` stamps verifiedAt / verifiedBy; any other
        status clears them.
        """
        status = _parse_enum(VerificationStatus, verification_status, "verificationStatus")
        verification_method = (
            _parse_enum(VerificationMethod, method, "verificationMethod") if method else None
        )
        record = await self.get_request(request_id)
        now = self.now()
        record.verification_status = status.value
        if verification_method is not None:
            record.verification_method = verification_method.value
        if status == VerificationStatus.VERIFIED:
            record.verified_at = now
            record.verified_by = verified_by
        else:
            record.verified_at = None
            record.verified_by = None
        self._touch(record, verified_by, now)
        await self._flush("update_verification")
        log.info(
            "dsar.verification_updated",
            dsar_request_id=record.request_id,
            verification_status=status.value,
        )
        return record

    async def delete_request(self, request_id: str, *, deleted_by: str | None = None) -> None:
        """Hard delete, including all child log rows."""
        record = await self.get_request(request_id)
        await self._db.delete(record)
        await self._flush("delete")
        log.warning("dsar.deleted", dsar_request_id=request_id, deleted_by=deleted_by)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @staticmethod
    def _scope_conditions(requester_scope: str | None) -> list[Any]:
        if requester_scope is None:
            return []
        return [DSARRequest.requester_id == requester_scope]

    @staticmethod
    def _filter_conditions(q: DSARListQuery, now: datetime) -> list[Any]:
        conditions: list[Any] = []
        if q.status is not None:
            conditions.append(DSARRequest.status == q.status.value)
        if q.request_type is not None:
            conditions.append(DSARRequest.request_type == q.request_type.value)
        if q.priority is not None:
            conditions.append(DSARRequest.priority == q.priority.value)
        if q.requester_email:
            conditions.append(func.lower(DSARRequest.requester_email) == q.requester_email.lower())
        if q.requester_id:
            conditions.append(DSARRequest.requester_id == q.requester_id)
        if q.assigned_to:
            conditions.append(DSARRequest.assigned_user_id == q.assigned_to)
        if q.submitted_from is not None:
            conditions.append(DSARRequest.submitted_at >= as_utc(q.submitted_from))
        if q.submitted_to is not None:
            conditions.append(DSARRequest.submitted_at <= as_utc(q.submitted_to))
        if q.overdue is not None:
            # Same rule as compute_sla: only completion stops the clock
            is_overdue = and_(
                DSARRequest.status != RequestStatus.COMPLETED.value,
                DSARRequest.due_date < now,
            )
            not_overdue = or_(
                DSARRequest.status == RequestStatus.COMPLETED.value,
                DSARRequest.due_date >= now,
            )
            conditions.append(is_overdue if q.overdue else not_overdue)
        return conditions

    async def _status_counts(self, conditions: list[Any]) -> dict[str, int]:
        counts = await self._grouped_counts(DSARRequest.status, conditions)
        return {s.value: counts.get(s.value, 0) for s in RequestStatus}

    async def _grouped_counts(self, column: Any, conditions: list[Any]) -> dict[str, int]:
        rows = await self._db.execute(
            select(column, func.count()).where(*conditions).group_by(column)
        )
        return {key: count for key, count in rows.all()}

    @staticmethod
    def _check_version(record: DSARRequest, expected_version: int | None) -> None:
        if expected_version is not None and record.version != expected_version:
            raise ConflictError(
                f"DSAR request {record.request_id!r} was modified by someone else "
                f"(expected version {expected_version}, current {record.version})",
                currentVersion=record.version,
            )

    @staticmethod
    def _touch(record: DSARRequest, author: str | None, now: datetime) -> None:
        record.updated_at = now
        if author is not None:
            record.updated_by = author

    async def _flush(self, operation: str) -> None:
        try:
            await self._db.flush()
        except StaleDataError as exc:
            log.warning("dsar.write_conflict", operation=operation)
            raise ConflictError(
                "The DSAR request was modified concurrently; reload and retry"
            ) from exc
        except SQLAlchemyError as exc:
            log.error("dsar.persistence_failed", operation=operation, error=str(exc))
            raise PersistenceError(f"Failed to persist DSAR request ({operation})") from exc

    def _after_transition(
        self,
        record: DSARRequest,
        result: TransitionResult,
        author: str | None,
    ) -> None:
        if not result.changed:
            return
        record_dsar_transition(result.old_status.value, result.new_status.value)
        log.info(
            "dsar.status_changed",
            dsar_request_id=record.request_id,
            old_status=result.old_status.value,
            new_status=result.new_status.value,
            changed_by=author,
        )
        self._publish(
            DSAR_STATUS_CHANGED,
            record,
            {
                "oldStatus": result.old_status.value,
                "newStatus": result.new_status.value,
                "changedBy": author,
            },
        )

    def _publish(self, event_type: str, record: DSARRequest, payload: dict[str, Any]) -> None:
        """Queue an event; it reaches the bus only if the transaction commits."""
        if self._bus is None:
            return
        publish_after_commit(
            self._db,
            self._bus,
            DomainEvent(
                type=event_type,
                request_id=record.request_id,
                requester_id=record.requester_id,
                payload=payload,
            ),
        )
