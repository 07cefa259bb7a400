# backend/studioops/routes/v1/sessions.py
"""
Session scheduling routes - API v1

Versioned endpoints under /api/v1/sessions.
All business logic delegated to BookingService; every request is scoped to
the tenant in the X-Tenant-ID header.

Endpoints:
    POST / - Book a session
    GET / - List a studio's sessions in a time range
    POST /bulk - Book several independent sessions
    POST /auto-assign - Suggest a free room and coach
    POST /series - Create a recurring series
    POST /series/preview - Dry-run a recurring series
    PATCH /series/{series_id} - Update future members of a series
    DELETE /series/{series_id} - Delete a series and its sessions
    GET /{session_id} - Session details
    PATCH /{session_id} - Update a session
    POST /{session_id}/reschedule - Move a session
    POST /{session_id}/cancel - Cancel a session
    PATCH /{session_id}/status - Move a session through its lifecycle
    DELETE /{session_id} - Delete a session
    POST /{session_id}/participants - Add a group participant
    DELETE /{session_id}/participants/{client_id} - Remove a group participant
"""

import asyncio
from datetime import datetime
import logging
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from ...api.dependencies import get_availability_service, get_booking_service, get_tenant_id
from ...core.exceptions import DomainException
from ...core.time_window import TimeWindow
from ...core.timezone_utils import ensure_utc
from ...schemas.session import (
    AssignmentResponse,
    AutoAssignRequest,
    BulkCreateResponse,
    BulkItemErrorResponse,
    BulkSessionCreate,
    DeleteResponse,
    ParticipantAdd,
    ParticipantResponse,
    SeriesCreate,
    SeriesCreateResponse,
    SeriesPreviewResponse,
    SeriesResponse,
    SeriesUpdate,
    SessionCancel,
    SessionCreate,
    SessionReschedule,
    SessionResponse,
    SessionStatusUpdate,
    SessionUpdate,
    SkippedOccurrenceResponse,
    WindowResponse,
)
from ...services.availability_service import AvailabilityService
from ...services.booking_service import BookingService, SkippedOccurrence

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _skipped_response(item: SkippedOccurrence) -> SkippedOccurrenceResponse:
    return SkippedOccurrenceResponse(
        start_time=item.window.start,
        end_time=item.window.end,
        code=item.code,
        message=item.message,
        details=item.details,
    )


# =============================================================================
# Static routes first (before dynamic routes with path parameters)
# =============================================================================


@router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"description": "Studio, room, coach or client not found"},
        409: {"description": "Scheduling conflict"},
        422: {"description": "Insufficient credit"},
    },
)
async def book_session(
    payload: SessionCreate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(booking_service.book_session, tenant_id, payload)
        return SessionResponse.model_validate(session)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("", response_model=List[SessionResponse])
async def list_sessions(
    studio_id: str = Query(..., pattern=ULID_PATH_PATTERN),
    start: datetime = Query(..., description="Range start (inclusive)"),
    end: datetime = Query(..., description="Range end (exclusive)"),
    include_cancelled: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> List[SessionResponse]:
    try:
        sessions = await asyncio.to_thread(
            booking_service.list_sessions,
            tenant_id,
            studio_id,
            ensure_utc(start),
            ensure_utc(end),
            include_cancelled,
        )
        return [SessionResponse.model_validate(s) for s in sessions]
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/bulk", response_model=BulkCreateResponse)
async def create_bulk(
    payload: BulkSessionCreate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BulkCreateResponse:
    """Book each item independently; one item's failure does not affect the others."""
    result = await asyncio.to_thread(booking_service.create_bulk, tenant_id, payload.items)
    return BulkCreateResponse(
        created=[SessionResponse.model_validate(s) for s in result.created],
        errors=[
            BulkItemErrorResponse(
                index=err.index, code=err.code, message=err.message, details=err.details
            )
            for err in result.errors
        ],
    )


@router.post("/auto-assign", response_model=AssignmentResponse)
async def auto_assign(
    payload: AutoAssignRequest = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AssignmentResponse:
    try:
        assignment = await asyncio.to_thread(
            availability_service.auto_assign_resources,
            tenant_id,
            payload.studio_id,
            TimeWindow(payload.start_time, payload.end_time),
            payload.preferred_room_id,
            payload.preferred_coach_id,
        )
        return AssignmentResponse(room_id=assignment.room_id, coach_id=assignment.coach_id)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/series",
    response_model=SeriesCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"description": "The first occurrence conflicts"}},
)
async def create_series(
    payload: SeriesCreate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SeriesCreateResponse:
    """
    Create a recurring series.

    Later occurrences that conflict or lack credit are reported in
    ``skipped`` instead of failing the request.
    """
    try:
        result = await asyncio.to_thread(booking_service.create_series, tenant_id, payload)
        return SeriesCreateResponse(
            series=SeriesResponse.model_validate(result.series),
            created=[SessionResponse.model_validate(s) for s in result.created],
            skipped=[_skipped_response(item) for item in result.skipped],
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/series/preview", response_model=SeriesPreviewResponse)
async def preview_series(
    payload: SeriesCreate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SeriesPreviewResponse:
    try:
        preview = await asyncio.to_thread(booking_service.preview_series, tenant_id, payload)
        return SeriesPreviewResponse(
            valid=[WindowResponse(start_time=w.start, end_time=w.end) for w in preview.valid],
            conflicts=[_skipped_response(item) for item in preview.conflicts],
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.patch("/series/{series_id}", response_model=SeriesResponse)
async def update_series(
    series_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: SeriesUpdate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SeriesResponse:
    try:
        series = await asyncio.to_thread(
            booking_service.update_series, tenant_id, series_id, payload
        )
        return SeriesResponse.model_validate(series)
    except DomainException as e:
        handle_domain_exception(e)


@router.delete("/series/{series_id}", response_model=DeleteResponse)
async def delete_series(
    series_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> DeleteResponse:
    try:
        deleted = await asyncio.to_thread(booking_service.delete_series, tenant_id, series_id)
        return DeleteResponse(deleted=deleted)
    except DomainException as e:
        handle_domain_exception(e)


# =============================================================================
# Single session routes
# =============================================================================


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(booking_service.get_session, tenant_id, session_id)
        return SessionResponse.model_validate(session)
    except DomainException as e:
        handle_domain_exception(e)


@router.patch("/{session_id}", response_model=SessionResponse)
async def update_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: SessionUpdate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(
            booking_service.update_session, tenant_id, session_id, payload
        )
        return SessionResponse.model_validate(session)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{session_id}/reschedule", response_model=SessionResponse)
async def reschedule_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: SessionReschedule = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(
            booking_service.reschedule_session,
            tenant_id,
            session_id,
            payload.start_time,
            payload.end_time,
            payload.allow_time_change_override,
        )
        return SessionResponse.model_validate(session)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: Optional[SessionCancel] = Body(None),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        payload = payload or SessionCancel()
        session = await asyncio.to_thread(
            booking_service.cancel_session,
            tenant_id,
            session_id,
            payload.reason,
            payload.deduct_session,
        )
        return SessionResponse.model_validate(session)
    except DomainException as e:
        handle_domain_exception(e)


@router.patch("/{session_id}/status", response_model=SessionResponse)
async def update_status(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: SessionStatusUpdate = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(
            booking_service.update_status,
            tenant_id,
            session_id,
            payload.status,
            payload.reason,
            payload.deduct_session,
        )
        return SessionResponse.model_validate(session)
    except DomainException as e:
        handle_domain_exception(e)


@router.delete("/{session_id}", response_model=DeleteResponse)
async def delete_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> DeleteResponse:
    try:
        deleted = await asyncio.to_thread(booking_service.delete_session, tenant_id, session_id)
        return DeleteResponse(deleted=deleted)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{session_id}/participants",
    response_model=ParticipantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_participant(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: ParticipantAdd = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> ParticipantResponse:
    try:
        participant = await asyncio.to_thread(
            booking_service.add_participant, tenant_id, session_id, payload
        )
        return ParticipantResponse.model_validate(participant)
    except DomainException as e:
        handle_domain_exception(e)


@router.delete("/{session_id}/participants/{client_id}", response_model=DeleteResponse)
async def remove_participant(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    client_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> DeleteResponse:
    try:
        deleted = await asyncio.to_thread(
            booking_service.remove_participant, tenant_id, session_id, client_id
        )
        return DeleteResponse(deleted=deleted)
    except DomainException as e:
        handle_domain_exception(e)
