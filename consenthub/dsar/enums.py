"""Enumerations for the DSAR (Data Subject Access Request) domain.

Values are the wire/storage representation and must not be renamed
without a data migration.
"""

from __future__ import annotations

from enum import StrEnum


class RequestType(StrEnum):
    """Data subject rights that a request can invoke."""

    DATA_ACCESS = "data_access"  # Right of access
    DATA_RECTIFICATION = "data_rectification"  # Right to rectification
    DATA_ERASURE = "data_erasure"  # Right to erasure
    DATA_PORTABILITY = "data_portability"  # Right to data portability
    RESTRICT_PROCESSING = "restrict_processing"  # Right to restrict processing
    OBJECT_PROCESSING = "object_processing"  # Right to object
    WITHDRAW_CONSENT = "withdraw_consent"  # Right to withdraw consent
    AUTOMATED_DECISION = "automated_decision"  # Automated decision-making rights


class RequestStatus(StrEnum):
    """Lifecycle status of a DSAR."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Statuses whose SLA clock is still running for the overdue report
OPEN_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.PENDING, RequestStatus.IN_PROGRESS}
)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DataCategory(StrEnum):
    PERSONAL_DATA = "personal_data"
    CONTACT_INFORMATION = "contact_information"
    BILLING_INFORMATION = "billing_information"
    USAGE_DATA = "usage_data"
    LOCATION_DATA = "location_data"
    COMMUNICATION_DATA = "communication_data"
    DEVICE_DATA = "device_data"
    BEHAVIORAL_DATA = "behavioral_data"
    PREFERENCES = "preferences"
    MARKETING_DATA = "marketing_data"
    ALL_DATA = "all_data"


class LegalBasis(StrEnum):
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"


class ResponseMethod(StrEnum):
    EMAIL = "email"
    POSTAL_MAIL = "postal_mail"
    SECURE_DOWNLOAD = "secure_download"
    API = "api"


class ResponseFormat(StrEnum):
    JSON = "json"
    CSV = "csv"
    PDF = "pdf"
    XML = "xml"


class VerificationMethod(StrEnum):
    EMAIL_VERIFICATION = "email_verification"
    IDENTITY_DOCUMENT = "identity_document"
    PHONE_VERIFICATION = "phone_verification"
    IN_PERSON = "in_person"


class VerificationStatus(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class RejectionReason(StrEnum):
    INVALID_IDENTITY = "invalid_identity"
    NO_DATA_FOUND = "no_data_found"
    THIRD_PARTY_RIGHTS = "third_party_rights"
    LEGAL_PRIVILEGE = "legal_privilege"
    MANIFESTLY_UNFOUNDED = "manifestly_unfounded"
    EXCESSIVE_REQUEST = "excessive_request"
    OTHER = "other"


class CommunicationType(StrEnum):
    EMAIL = "email"
    PHONE = "phone"
    LETTER = "letter"
    SYSTEM_NOTIFICATION = "system_notification"


class CommunicationDirection(StrEnum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class RequestSource(StrEnum):
    WEB_FORM = "web_form"
    EMAIL = "email"
    PHONE = "phone"
    LETTER = "letter"
    IN_PERSON = "in_person"
    API = "api"


class CustomerType(StrEnum):
    INDIVIDUAL = "individual"
    BUSINESS = "business"
    EMPLOYEE = "employee"
    PROSPECT = "prospect"


class ApplicableLaw(StrEnum):
    GDPR = "GDPR"
    CCPA = "CCPA"
    PDPA_SL = "PDPA_SL"
    LGPD = "LGPD"
    PIPEDA = "PIPEDA"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


JURISDICTION_LAWS: dict[str, ApplicableLaw] = {
    "Sri Lanka": ApplicableLaw.PDPA_SL,
    "European Union": ApplicableLaw.GDPR,
    "California": ApplicableLaw.CCPA,
    "Brazil": ApplicableLaw.LGPD,
    "Canada": ApplicableLaw.PIPEDA,
}
