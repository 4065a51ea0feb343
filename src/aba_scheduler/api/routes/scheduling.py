"""
Session scheduling, cancellation and recovery API routes
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field, model_validator

from ...core.services import SchedulingServices
from ...models import (
    AlternativeOpportunity,
    AlternativeTimeSlot,
    BulkCancelRequest,
    BulkCancelResponse,
    BulkScheduleRequest,
    BulkScheduleResponse,
    CancelSessionRequest,
    CancelSessionResponse,
    RBTUnavailabilityRequest,
    RBTUnavailabilityResponse,
    RecurringScheduleRequest,
    RescheduleOpportunity,
    RescheduleSessionRequest,
    ScheduleSessionRequest,
    SchedulingResult,
    Session,
    SessionStatus,
    UnavailabilityType,
)
from ...utils.exceptions import ValidationError
from ..dependencies import apply_outcome_status, get_services, load_session

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Scheduling"])


class CancelSessionBody(BaseModel):
    reason: str = Field(..., min_length=1)
    cancelled_by: str = "system"
    find_alternatives: bool = False
    max_alternatives: int = Field(5, ge=1, le=50)


class RBTUnavailabilityBody(BaseModel):
    start_date: datetime
    end_date: datetime
    reason: str = Field(..., min_length=1)
    unavailability_type: UnavailabilityType = UnavailabilityType.OTHER
    reported_by: str = "system"
    auto_reassign: bool = True

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


@router.post(
    "/sessions",
    response_model=SchedulingResult,
    status_code=201,
    responses={
        409: {"description": "Caregiver or client already booked"},
        422: {"description": "Scheduling constraint violated"},
        404: {"description": "Client team or caregiver not found"},
        503: {"description": "Transaction failed, retry later"},
    },
)
async def schedule_session(
    request: ScheduleSessionRequest,
    response: Response,
    validate_only: bool = Query(False, description="Check the request without persisting"),
    services: SchedulingServices = Depends(get_services),
) -> SchedulingResult:
    """Schedule a session, selecting a caregiver from the client's team when none is given"""
    logger.info(f"Schedule request for client {request.client_id} at {request.start_time.isoformat()}")

    result = await services.scheduler.schedule_session(request, validate_only=validate_only)
    apply_outcome_status(response, result.outcome, 200 if validate_only else 201)
    return result


@router.post("/sessions/validate", response_model=SchedulingResult)
async def validate_session(
    request: ScheduleSessionRequest,
    response: Response,
    services: SchedulingServices = Depends(get_services),
) -> SchedulingResult:
    """Dry run of session scheduling"""
    result = await services.scheduler.validate_only(request)
    apply_outcome_status(response, result.outcome)
    return result


@router.post("/sessions/bulk", response_model=BulkScheduleResponse)
async def bulk_schedule_sessions(
    request: BulkScheduleRequest,
    services: SchedulingServices = Depends(get_services),
) -> BulkScheduleResponse:
    """Schedule many sessions; each item succeeds or fails on its own"""
    logger.info(f"Bulk schedule request with {len(request.sessions)} sessions")
    return await services.scheduler.bulk_schedule_sessions(request.sessions, validate_only=request.validate_only)


@router.post("/sessions/recurring", response_model=BulkScheduleResponse)
async def schedule_recurring_sessions(
    request: RecurringScheduleRequest,
    services: SchedulingServices = Depends(get_services),
) -> BulkScheduleResponse:
    return await services.scheduler.bulk_schedule_recurring(request)


@router.post("/sessions/bulk-cancel", response_model=BulkCancelResponse)
async def bulk_cancel_sessions(
    request: BulkCancelRequest,
    services: SchedulingServices = Depends(get_services),
) -> BulkCancelResponse:
    """Cancel many sessions; each item succeeds or fails on its own"""
    logger.info(f"Bulk cancel request for {len(request.session_ids)} sessions")
    return await services.cancellation.bulk_cancel_sessions(
        request.session_ids,
        request.reason,
        cancelled_by=request.cancelled_by,
        find_alternatives=request.find_alternatives,
    )


@router.get("/sessions/{session_id}", response_model=Session)
async def get_session(
    session_id: str,
    services: SchedulingServices = Depends(get_services),
) -> Session:
    return await load_session(session_id, services)


@router.post("/sessions/{session_id}/reschedule", response_model=SchedulingResult)
async def reschedule_session(
    session_id: str,
    request: RescheduleSessionRequest,
    response: Response,
    services: SchedulingServices = Depends(get_services),
) -> SchedulingResult:
    """Move a session to a new start time"""
    result = await services.scheduler.reschedule_session(
        session_id,
        request.new_start_time,
        updated_by=request.updated_by,
        reason=request.reason,
    )
    apply_outcome_status(response, result.outcome)
    return result


@router.post("/sessions/{session_id}/cancel", response_model=CancelSessionResponse)
async def cancel_session(
    session_id: str,
    body: CancelSessionBody,
    response: Response,
    services: SchedulingServices = Depends(get_services),
) -> CancelSessionResponse:
    """Cancel a session and optionally look for ways to reuse the freed slot"""
    result = await services.cancellation.cancel_session(CancelSessionRequest(
        session_id=session_id,
        reason=body.reason,
        cancelled_by=body.cancelled_by,
        find_alternatives=body.find_alternatives,
        max_alternatives=body.max_alternatives,
    ))
    apply_outcome_status(response, result.outcome)
    return result


async def _cancelled_session(session_id: str, services: SchedulingServices) -> Session:
    session = await load_session(session_id, services)
    if session.status != SessionStatus.CANCELLED:
        raise ValidationError(
            "Opportunities are only available for cancelled sessions",
            field="status",
            value=session.status.value,
        )
    return session


@router.get("/sessions/{session_id}/opportunities", response_model=List[AlternativeOpportunity])
async def get_alternative_opportunities(
    session_id: str,
    max_opportunities: Optional[int] = Query(None, ge=1, le=50),
    services: SchedulingServices = Depends(get_services),
) -> List[AlternativeOpportunity]:
    """Other clients the freed caregiver could see in a cancelled slot"""
    session = await _cancelled_session(session_id, services)
    return await services.cancellation.find_alternative_opportunities(session, max_opportunities)


@router.get("/sessions/{session_id}/reschedule-opportunities", response_model=List[RescheduleOpportunity])
async def get_reschedule_opportunities(
    session_id: str,
    search_days: Optional[int] = Query(None, ge=1, le=60),
    services: SchedulingServices = Depends(get_services),
) -> List[RescheduleOpportunity]:
    """Later sessions of the same caregiver that could move into a cancelled slot"""
    session = await _cancelled_session(session_id, services)
    return await services.cancellation.find_reschedule_opportunities(session, search_days)


@router.get("/clients/{client_id}/alternative-slots", response_model=List[AlternativeTimeSlot])
async def get_alternative_time_slots(
    client_id: str,
    preferred_start: datetime,
    days_to_search: Optional[int] = Query(None, ge=1, le=60),
    max_results: Optional[int] = Query(None, ge=1, le=100),
    rbt_id: Optional[str] = None,
    services: SchedulingServices = Depends(get_services),
) -> List[AlternativeTimeSlot]:
    """Free session slots near a preferred start for the client's team"""
    return await services.scheduler.find_alternative_time_slots(
        client_id,
        preferred_start,
        days_to_search=days_to_search,
        max_results=max_results,
        rbt_id=rbt_id,
    )


@router.post("/rbts/{rbt_id}/unavailability", response_model=RBTUnavailabilityResponse, status_code=201)
async def report_rbt_unavailability(
    rbt_id: str,
    body: RBTUnavailabilityBody,
    response: Response,
    services: SchedulingServices = Depends(get_services),
) -> RBTUnavailabilityResponse:
    """Record caregiver unavailability and reassign the affected sessions"""
    logger.info(f"Unavailability reported for caregiver {rbt_id}")
    result = await services.unavailability.process_rbt_unavailability(RBTUnavailabilityRequest(
        rbt_id=rbt_id,
        **body.model_dump(),
    ))
    apply_outcome_status(response, result.outcome, 201)
    return result
