"""DSAR REST API.

POST   /api/v1/dsar/dsarRequest                          - Submit a request
POST   /api/v1/dsar/requests                             - Submit (alias)
GET    /api/v1/dsar/dsarRequest                          - List / filter / paginate
GET    /api/v1/dsar/dsarRequest/overdue                  - Pending or in-progress past due (CSR)
GET    /api/v1/dsar/dsarRequest/export                   - JSON / CSV download (CSR)
GET    /api/v1/dsar/dsarRequest/{requestId}              - Fetch one
PUT    /api/v1/dsar/dsarRequest/{requestId}              - Update / transition
DELETE /api/v1/dsar/dsarRequest/{requestId}              - Hard delete (ADMIN)
GET    /api/v1/dsar/dsarRequest/{requestId}/history      - Audit timeline
POST   /api/v1/dsar/dsarRequest/{requestId}/notes        - Add processing note (CSR)
POST   /api/v1/dsar/dsarRequest/{requestId}/communications - Log communication (CSR)
PUT    /api/v1/dsar/dsarRequest/{requestId}/assign       - Assign staff member (CSR)
PUT    /api/v1/dsar/dsarRequest/{requestId}/verification - Identity verification (CSR)
GET    /api/v1/dsar/stats                                - Aggregate statistics, optional fromDate/toDate (CSR)
PUT    /api/v1/dsar/bulk                                 - Same update for many requests (CSR)

Customers only see their own requests (requesterId == token sub) and may
only cancel them; everything else about a request is staff territory.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.auth.dependencies import AuthenticatedUser, require_permission
from consenthub.config import Settings, get_settings
from consenthub.core.exceptions import ForbiddenError
from consenthub.core.policy import Permission, has_permission
from consenthub.database import get_db_session
from consenthub.dsar.enums import Priority, RequestStatus, RequestType
from consenthub.dsar.schemas import (
    AssignmentUpdate,
    BulkFailureOut,
    BulkUpdateBody,
    CommunicationCreate,
    DSARBulkUpdateEnvelope,
    DSARHistoryEnvelope,
    DSARListEnvelope,
    DSARListQuery,
    DSAROverdueEnvelope,
    DSARRequestCreate,
    DSARRequestEnvelope,
    DSARRequestOut,
    DSARRequestUpdate,
    DSARStatsEnvelope,
    DSARStatsOut,
    HistoryEntryOut,
    MessageEnvelope,
    NoteCreate,
    VerificationUpdate,
)
from consenthub.dsar.service import DSARService
from consenthub.models.dsar_request import DSARRequest
from consenthub.telemetry.logging import bind_dsar_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/dsar", tags=["dsar"])


# ------------------------------------------------------------------ #
# Dependencies
# ------------------------------------------------------------------ #


def get_dsar_service(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> DSARService:
    return DSARService(db, settings, event_bus=getattr(request.app.state, "event_bus", None))


def list_query_params(
    status_: RequestStatus | None = Query(None, alias="status"),
    request_type: RequestType | None = Query(None, alias="requestType"),
    priority: Priority | None = Query(None),
    requester_email: str | None = Query(None, alias="requesterEmail"),
    requester_id: str | None = Query(None, alias="requesterId"),
    assigned_to: str | None = Query(None, alias="assignedTo"),
    submitted_from: datetime | None = Query(None, alias="submittedFrom"),
    submitted_to: datetime | None = Query(None, alias="submittedTo"),
    overdue: bool | None = Query(None),
    page: int = Query(1),
    limit: int | None = Query(None),
    sort_by: str = Query("submittedAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
) -> DSARListQuery:
    return DSARListQuery(
        status=status_,
        request_type=request_type,
        priority=priority,
        requester_email=requester_email,
        requester_id=requester_id,
        assigned_to=assigned_to,
        submitted_from=submitted_from,
        submitted_to=submitted_to,
        overdue=overdue,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )


def _envelope(service: DSARService, record: DSARRequest) -> DSARRequestEnvelope:
    return DSARRequestEnvelope(request=DSARRequestOut.from_record(record, service.now()))


# ------------------------------------------------------------------ #
# Collection
# ------------------------------------------------------------------ #


async def _create(
    body: DSARRequestCreate,
    user: AuthenticatedUser,
    service: DSARService,
) -> DSARRequestEnvelope:
    # Customers always file for themselves; staff may file on someone's behalf
    if has_permission(user.role, Permission.DSAR_READ_ALL):
        requester_id = body.requester_id
    else:
        requester_id = user.user_id
    record = await service.create_request(
        body,
        requester_id=requester_id,
        created_by=user.user_id,
    )
    return _envelope(service, record)


@router.post(
    "/dsarRequest",
    response_model=DSARRequestEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_dsar_request(
    body: DSARRequestCreate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_CREATE)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    return await _create(body, user, service)


@router.post(
    "/requests",
    response_model=DSARRequestEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_dsar_request_alias(
    body: DSARRequestCreate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_CREATE)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    return await _create(body, user, service)


@router.get("/dsarRequest", response_model=DSARListEnvelope)
async def list_dsar_requests(
    query: DSARListQuery = Depends(list_query_params),
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_READ)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARListEnvelope:
    page = await service.list_requests(query, requester_scope=user.requester_scope)
    now = service.now()
    return DSARListEnvelope(
        requests=[DSARRequestOut.from_record(r, now) for r in page.requests],
        total=page.total,
        page=page.page,
        limit=page.limit,
        total_pages=page.total_pages,
        stats=page.stats,
    )


@router.get(
    "/dsarRequest/overdue",
    response_model=DSAROverdueEnvelope,
)
async def list_overdue_dsar_requests(
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_READ_ALL)),
    service: DSARService = Depends(get_dsar_service),
) -> DSAROverdueEnvelope:
    records = await service.list_overdue()
    now = service.now()
    return DSAROverdueEnvelope(
        requests=[DSARRequestOut.from_record(r, now) for r in records],
        total=len(records),
    )


@router.get("/dsarRequest/export")
async def export_dsar_requests(
    format: Literal["json", "csv"] = Query("json"),
    query: DSARListQuery = Depends(list_query_params),
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_EXPORT)),
    service: DSARService = Depends(get_dsar_service),
) -> Response:
    result = await service.export(query, fmt=format)
    log.info("dsar.export_downloaded", format=format, count=result.count, user_id=user.user_id)
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f"attachment; filename={result.filename}"},
    )


@router.get("/stats", response_model=DSARStatsEnvelope)
async def dsar_stats(
    from_date: datetime | None = Query(None, alias="fromDate"),
    to_date: datetime | None = Query(None, alias="toDate"),
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_STATS)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARStatsEnvelope:
    stats = await service.get_stats(from_date=from_date, to_date=to_date)
    return DSARStatsEnvelope(
        stats=DSARStatsOut(
            total=stats.total,
            by_status=stats.by_status,
            by_type=stats.by_type,
            by_priority=stats.by_priority,
            overdue=stats.overdue,
            average_processing_days=stats.average_processing_days,
            compliance_rate=stats.compliance_rate,
            from_date=from_date,
            to_date=to_date,
        )
    )


@router.put("/bulk", response_model=DSARBulkUpdateEnvelope)
async def bulk_update_dsar_requests(
    body: BulkUpdateBody,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_UPDATE)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARBulkUpdateEnvelope:
    result = await service.bulk_update(body.request_ids, body.updates, author=user.display_name)
    now = service.now()
    return DSARBulkUpdateEnvelope(
        updated=[DSARRequestOut.from_record(r, now) for r in result.updated],
        failed=[
            BulkFailureOut(request_id=request_id, error=exc.error_code, message=exc.message)
            for request_id, exc in result.failed
        ],
    )


# ------------------------------------------------------------------ #
# Single request
# ------------------------------------------------------------------ #


@router.get(
    "/dsarRequest/{request_id}",
    response_model=DSARRequestEnvelope,
)
async def get_dsar_request(
    request_id: str,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_READ)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    bind_dsar_context(request_id)
    record = await service.get_request(request_id, requester_scope=user.requester_scope)
    return _envelope(service, record)


@router.put(
    "/dsarRequest/{request_id}",
    response_model=DSARRequestEnvelope,
)
async def update_dsar_request(
    request_id: str,
    body: DSARRequestUpdate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_CANCEL_OWN)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    bind_dsar_context(request_id)
    if not has_permission(user.role, Permission.DSAR_UPDATE):
        _assert_customer_cancellation(body)
    record = await service.update_request(
        request_id,
        body,
        author=user.display_name,
        requester_scope=user.requester_scope,
    )
    return _envelope(service, record)


def _assert_customer_cancellation(body: DSARRequestUpdate) -> None:
    changed = set(body.model_dump(exclude_none=True)) - {"expected_version"}
    if changed != {"status"} or body.status != RequestStatus.CANCELLED:
        raise ForbiddenError("Customers may only cancel their own requests")


@router.delete(
    "/dsarRequest/{request_id}",
    response_model=MessageEnvelope,
)
async def delete_dsar_request(
    request_id: str,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_DELETE)),
    service: DSARService = Depends(get_dsar_service),
) -> MessageEnvelope:
    bind_dsar_context(request_id)
    await service.delete_request(request_id, deleted_by=user.user_id)
    return MessageEnvelope(message=f"DSAR request {request_id} deleted")


@router.get(
    "/dsarRequest/{request_id}/history",
    response_model=DSARHistoryEnvelope,
)
async def dsar_request_history(
    request_id: str,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_READ)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARHistoryEnvelope:
    entries = await service.get_history(request_id, requester_scope=user.requester_scope)
    return DSARHistoryEnvelope(
        request_id=request_id,
        history=[HistoryEntryOut.model_validate(e) for e in entries],
    )


@router.post(
    "/dsarRequest/{request_id}/notes",
    response_model=DSARRequestEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def add_dsar_note(
    request_id: str,
    body: NoteCreate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_ANNOTATE)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    record = await service.add_note(request_id, body.note, author=user.display_name)
    return _envelope(service, record)


@router.post(
    "/dsarRequest/{request_id}/communications",
    response_model=DSARRequestEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def add_dsar_communication(
    request_id: str,
    body: CommunicationCreate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_ANNOTATE)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    record = await service.add_communication(
        request_id,
        type=body.type.value,
        direction=body.direction.value,
        content=body.content,
        author=user.display_name,
    )
    return _envelope(service, record)


@router.put(
    "/dsarRequest/{request_id}/assign",
    response_model=DSARRequestEnvelope,
)
async def assign_dsar_request(
    request_id: str,
    body: AssignmentUpdate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_ASSIGN)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    record = await service.assign(
        request_id,
        body.user_id,
        name=body.name,
        email=str(body.email) if body.email else None,
        author=user.display_name,
    )
    return _envelope(service, record)


@router.put(
    "/dsarRequest/{request_id}/verification",
    response_model=DSARRequestEnvelope,
)
async def update_dsar_verification(
    request_id: str,
    body: VerificationUpdate,
    user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_VERIFY)),
    service: DSARService = Depends(get_dsar_service),
) -> DSARRequestEnvelope:
    record = await service.update_verification(
        request_id,
        body.verification_status.value,
        method=body.verification_method.value if body.verification_method else None,
        verified_by=user.display_name,
    )
    return _envelope(service, record)
