"""SQLAlchemy ORM models for DSAR persistence.

One parent row per request (``dsar_requests``) plus three append-only
child logs:

- dsar_processing_notes   internal staff annotations
- dsar_communications     contact with the data subject
- dsar_status_changes     every status transition, for the history view

Child rows are only ever inserted; the service layer exposes no
operation that edits or deletes them. Deleting the parent (an admin
override) cascades.

``version`` is the mapper's version_id_col: every UPDATE is issued with
``WHERE version = :old`` and a stale write raises StaleDataError.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from consenthub.core.exceptions import ValidationError
from consenthub.database import Base, JSONType
from consenthub.dsar.enums import Priority, RequestStatus, RequestType

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in RequestStatus)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DSARRequest(Base):
    """Persistent record of a data subject access request."""

    __tablename__ = "dsar_requests"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    request_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Human-readable identifier, DSAR-<millis>-<6 chars>",
    )

    # Requester
    requester_id: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    requester_name: Mapped[str] = mapped_column(String(255), nullable=False)
    requester_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    requester_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Classification
    request_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    data_categories: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    legal_basis: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Workflow state
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=RequestStatus.PENDING.value,
        index=True,
    )
    priority: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=Priority.MEDIUM.value,
        index=True,
    )

    # Temporal fields
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    due_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="Set once at creation, never recalculated",
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Assignment
    assigned_user_id: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    assigned_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Response
    response_method: Mapped[str] = mapped_column(String(50), nullable=False, default="email")
    response_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Verification
    verification_method: Mapped[str] = mapped_column(
        String(50), nullable=False, default="email_verification"
    )
    verification_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Rejection (populated only while status == rejected)
    rejection_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rejection_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Metadata / compliance
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="web_form")
    customer_type: Mapped[str] = mapped_column(String(50), nullable=False, default="individual")
    jurisdiction: Mapped[str] = mapped_column(String(100), nullable=False, default="Sri Lanka")
    applicable_laws: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, default="low")
    sensitive_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    related_tickets: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    related_cases: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    created_by: Mapped[str | None] = mapped_column(String(512), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Append-only audit logs
    processing_notes: Mapped[list[DSARProcessingNote]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="DSARProcessingNote.id",
        lazy="selectin",
    )
    communications: Mapped[list[DSARCommunication]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="DSARCommunication.id",
        lazy="selectin",
    )
    status_changes: Mapped[list[DSARStatusChange]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="DSARStatusChange.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_dsar_requests_status"),
    )

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        try:
            return RequestStatus(value).value
        except ValueError:
            raise ValidationError(f"Invalid status: {value!r}", fields=["status"]) from None

    @validates("request_type")
    def _validate_request_type(self, key: str, value: str) -> str:
        try:
            return RequestType(value).value
        except ValueError:
            raise ValidationError(
                f"Invalid requestType: {value!r}", fields=["requestType"]
            ) from None

    @validates("priority")
    def _validate_priority(self, key: str, value: str) -> str:
        try:
            return Priority(value).value
        except ValueError:
            raise ValidationError(f"Invalid priority: {value!r}", fields=["priority"]) from None

    def __repr__(self) -> str:
        return (
            f"<DSARRequest request_id={self.request_id!r} "
            f"type={self.request_type!r} status={self.status!r}>"
        )


Index("ix_dsar_requests_submitted_at_desc", DSARRequest.submitted_at.desc())


class DSARProcessingNote(Base):
    __tablename__ = "dsar_processing_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_pk: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("dsar_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    note: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    request: Mapped[DSARRequest] = relationship(back_populates="processing_notes")


class DSARCommunication(Base):
    __tablename__ = "dsar_communications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_pk: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("dsar_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    request: Mapped[DSARRequest] = relationship(back_populates="communications")


class DSARStatusChange(Base):
    __tablename__ = "dsar_status_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_pk: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("dsar_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    request: Mapped[DSARRequest] = relationship(back_populates="status_changes")
