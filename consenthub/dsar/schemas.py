"""Request / response schemas for the DSAR API.

Wire format is camelCase (``requestId``, ``dueDate`` ...) to match the
ConsentHub frontend; Python attributes stay snake_case. Responses are
built from ORM rows with DSARRequestOut.from_record(), which is also
where the derived SLA fields are computed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from consenthub.dsar.enums import (
    CommunicationDirection,
    CommunicationType,
    CustomerType,
    DataCategory,
    LegalBasis,
    Priority,
    RejectionReason,
    RequestSource,
    RequestStatus,
    RequestType,
    ResponseFormat,
    ResponseMethod,
    RiskLevel,
    VerificationMethod,
    VerificationStatus,
)
from consenthub.dsar.sla import as_utc, compute_sla
from consenthub.models.dsar_request import DSARRequest


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ------------------------------------------------------------------ #
# Inputs
# ------------------------------------------------------------------ #


class ResponseData(CamelModel):
    format: ResponseFormat = ResponseFormat.JSON
    download_url: str | None = Field(default=None, max_length=2048)
    expires_at: datetime | None = None
    file_size: int | None = Field(default=None, ge=0)
    record_count: int | None = Field(default=None, ge=0)


# Shape check only: the address is stored exactly as the requester typed it
REQUESTER_EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


class DSARRequestCreate(CamelModel):
    """Payload accepted by the Submission Handler."""

    requester_name: str = Field(..., min_length=1, max_length=255)
    requester_email: str = Field(..., max_length=320, pattern=REQUESTER_EMAIL_PATTERN)
    requester_phone: str | None = Field(default=None, max_length=64)
    requester_id: str | None = Field(
        default=None,
        max_length=512,
        description="Only honoured when staff file on behalf of a data subject",
    )
    request_type: RequestType
    subject: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    data_categories: list[DataCategory] = Field(default_factory=list)
    legal_basis: LegalBasis | None = None
    priority: Priority = Priority.MEDIUM
    response_method: ResponseMethod = ResponseMethod.EMAIL
    customer_type: CustomerType = CustomerType.INDIVIDUAL
    source: RequestSource = RequestSource.WEB_FORM
    jurisdiction: str | None = Field(default=None, max_length=100)
    sensitive_data: bool = False
    tags: list[str] = Field(default_factory=list)

    @field_validator("requester_name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("requesterName cannot be blank")
        return value


class DSARRequestUpdate(CamelModel):
    """General CSR update. Every field is optional."""

    status: RequestStatus | None = None
    priority: Priority | None = None
    note: str | None = Field(default=None, min_length=1, max_length=2000)
    rejection_reason: RejectionReason | None = None
    rejection_details: str | None = Field(default=None, max_length=2000)
    response_data: ResponseData | None = None
    risk_level: RiskLevel | None = None
    sensitive_data: bool | None = None
    tags: list[str] | None = None
    related_tickets: list[str] | None = None
    related_cases: list[str] | None = None
    expected_version: int | None = Field(
        default=None,
        ge=1,
        description="Reject the write with 409 if the stored version differs",
    )


class BulkUpdateBody(CamelModel):
    request_ids: list[str] = Field(..., min_length=1, max_length=100)
    updates: DSARRequestUpdate


class NoteCreate(CamelModel):
    note: str = Field(..., min_length=1, max_length=2000)


class CommunicationCreate(CamelModel):
    type: CommunicationType
    direction: CommunicationDirection
    content: str = Field(..., min_length=1, max_length=5000)


class AssignmentUpdate(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=512)
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None


class VerificationUpdate(CamelModel):
    verification_status: VerificationStatus
    verification_method: VerificationMethod | None = None


class DSARListQuery(CamelModel):
    """Filters, pagination and sorting for the listing interface.

    Bounds on page/limit/sortBy are enforced by DSARService so that direct
    callers get the same ValidationError as HTTP callers.
    """

    status: RequestStatus | None = None
    request_type: RequestType | None = None
    priority: Priority | None = None
    requester_email: str | None = None
    requester_id: str | None = None
    assigned_to: str | None = None
    submitted_from: datetime | None = None
    submitted_to: datetime | None = None
    overdue: bool | None = None
    page: int = 1
    limit: int | None = None
    sort_by: str = "submittedAt"
    sort_order: Literal["asc", "desc"] = "desc"


# ------------------------------------------------------------------ #
# Outputs
# ------------------------------------------------------------------ #


class AssignedTo(CamelModel):
    user_id: str
    name: str | None = None
    email: str | None = None
    assigned_at: datetime | None = None


class ProcessingNoteOut(CamelModel):
    note: str
    author: str | None
    timestamp: datetime


class CommunicationOut(CamelModel):
    type: str
    direction: str
    content: str
    author: str | None
    timestamp: datetime


class DSARRequestOut(CamelModel):
    id: str
    request_id: str
    requester_id: str
    requester_name: str
    requester_email: str
    requester_phone: str | None
    request_type: str
    subject: str
    description: str
    data_categories: list[str]
    legal_basis: str | None
    status: str
    priority: str
    submitted_at: datetime
    due_date: datetime
    acknowledged_at: datetime | None
    completed_at: datetime | None
    assigned_to: AssignedTo | None
    processing_notes: list[ProcessingNoteOut]
    communications: list[CommunicationOut]
    response_method: str
    response_data: dict[str, Any] | None
    verification_method: str
    verification_status: str
    verified_at: datetime | None
    verified_by: str | None
    rejection_reason: str | None
    rejection_details: str | None
    source: str
    customer_type: str
    jurisdiction: str
    applicable_laws: list[str]
    risk_level: str
    sensitive_data: bool
    tags: list[str]
    related_tickets: list[str]
    related_cases: list[str]
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    version: int

    # Derived, never stored
    is_overdue: bool
    days_remaining: int
    processing_days: int

    @classmethod
    def from_record(cls, record: DSARRequest, now: datetime) -> DSARRequestOut:
        sla = compute_sla(
            status=record.status,
            due_date=record.due_date,
            submitted_at=record.submitted_at,
            completed_at=record.completed_at,
            now=now,
        )
        assigned = None
        if record.assigned_user_id:
            assigned = AssignedTo(
                user_id=record.assigned_user_id,
                name=record.assigned_name,
                email=record.assigned_email,
                assigned_at=_utc_or_none(record.assigned_at),
            )
        return cls(
            id=str(record.id),
            request_id=record.request_id,
            requester_id=record.requester_id,
            requester_name=record.requester_name,
            requester_email=record.requester_email,
            requester_phone=record.requester_phone,
            request_type=record.request_type,
            subject=record.subject,
            description=record.description,
            data_categories=list(record.data_categories or []),
            legal_basis=record.legal_basis,
            status=record.status,
            priority=record.priority,
            submitted_at=as_utc(record.submitted_at),
            due_date=as_utc(record.due_date),
            acknowledged_at=_utc_or_none(record.acknowledged_at),
            completed_at=_utc_or_none(record.completed_at),
            assigned_to=assigned,
            processing_notes=[
                ProcessingNoteOut(note=n.note, author=n.author, timestamp=as_utc(n.timestamp))
                for n in record.processing_notes
            ],
            communications=[
                CommunicationOut(
                    type=c.type,
                    direction=c.direction,
                    content=c.content,
                    author=c.author,
                    timestamp=as_utc(c.timestamp),
                )
                for c in record.communications
            ],
            response_method=record.response_method,
            response_data=record.response_data,
            verification_method=record.verification_method,
            verification_status=record.verification_status,
            verified_at=_utc_or_none(record.verified_at),
            verified_by=record.verified_by,
            rejection_reason=record.rejection_reason,
            rejection_details=record.rejection_details,
            source=record.source,
            customer_type=record.customer_type,
            jurisdiction=record.jurisdiction,
            applicable_laws=list(record.applicable_laws or []),
            risk_level=record.risk_level,
            sensitive_data=record.sensitive_data,
            tags=list(record.tags or []),
            related_tickets=list(record.related_tickets or []),
            related_cases=list(record.related_cases or []),
            created_by=record.created_by,
            updated_by=record.updated_by,
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
            version=record.version,
            is_overdue=sla.is_overdue,
            days_remaining=sla.days_remaining,
            processing_days=sla.processing_days,
        )


def _utc_or_none(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


class HistoryEntryOut(CamelModel):
    timestamp: datetime
    kind: Literal["created", "status_change", "note", "communication"]
    author: str | None = None
    description: str
    details: dict[str, Any] = Field(default_factory=dict)


class DSARStatsOut(CamelModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_priority: dict[str, int]
    overdue: int
    average_processing_days: float | None
    compliance_rate: float | None
    from_date: datetime | None = None
    to_date: datetime | None = None


# ------------------------------------------------------------------ #
# Envelopes
# ------------------------------------------------------------------ #


class DSARRequestEnvelope(CamelModel):
    success: bool = True
    request: DSARRequestOut


class DSARListEnvelope(CamelModel):
    success: bool = True
    requests: list[DSARRequestOut]
    total: int
    page: int
    limit: int
    total_pages: int
    stats: dict[str, int]


class DSAROverdueEnvelope(CamelModel):
    success: bool = True
    requests: list[DSARRequestOut]
    total: int


class DSARHistoryEnvelope(CamelModel):
    success: bool = True
    request_id: str
    history: list[HistoryEntryOut]


class DSARStatsEnvelope(CamelModel):
    success: bool = True
    stats: DSARStatsOut


class BulkFailureOut(CamelModel):
    request_id: str
    error: str
    message: str


class DSARBulkUpdateEnvelope(CamelModel):
    success: bool = True
    updated: list[DSARRequestOut]
    failed: list[BulkFailureOut]


class MessageEnvelope(CamelModel):
    success: bool = True
    message: str
