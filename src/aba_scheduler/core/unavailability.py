"""
Caregiver unavailability handling and session reassignment
"""
import logging
from datetime import datetime
from typing import Optional

from ..database import Database, client_lock_key, rbt_lock_key, session_lock_key
from ..logging_config import SchedulingEventLogger, event_logger
from ..models import (
    MUTABLE_STATUSES,
    RBTUnavailabilityRequest,
    RBTUnavailabilityResponse,
    ScheduleEvent,
    ScheduleEventType,
    SchedulingOutcome,
    SessionReassignmentResult,
)
from ..utils.exceptions import PERSISTENCE_EXCEPTIONS, TransactionError
from ..utils.helpers import end_of_day, generate_id, start_of_day
from .cache import ContinuityCache
from .clock import Clock
from .continuity import ContinuityLookup
from .events import session_event
from .validator import ConstraintValidator

logger = logging.getLogger(__name__)

UNAVAILABILITY_SOURCE = "rbt_unavailable"


class RBTUnavailabilityService:
    """Records caregiver unavailability and moves affected sessions to other team members"""

    def __init__(
        self,
        database: Database,
        continuity: ContinuityLookup,
        validator: ConstraintValidator,
        clock: Clock,
        continuity_cache: Optional[ContinuityCache] = None,
        scheduling_logger: Optional[SchedulingEventLogger] = None
    ):
        self.database = database
        self.continuity = continuity
        self.validator = validator
        self.clock = clock
        self.continuity_cache = continuity_cache
        self.event_logger = scheduling_logger or event_logger
        logger.info("Caregiver unavailability service initialized")

    async def process_rbt_unavailability(self, request: RBTUnavailabilityRequest) -> RBTUnavailabilityResponse:
        now = self.clock.now()
        caregiver = await self.database.caregivers.find_by_id(request.rbt_id)
        if caregiver is None:
            return RBTUnavailabilityResponse(
                success=False,
                outcome=SchedulingOutcome.NOT_FOUND,
                message=f"Caregiver {request.rbt_id} not found",
                rbt_id=request.rbt_id,
            )
        if not caregiver.is_active:
            return RBTUnavailabilityResponse(
                success=False,
                outcome=SchedulingOutcome.VALIDATION_ERROR,
                message=f"Caregiver {request.rbt_id} is not active",
                rbt_id=request.rbt_id,
            )

        lock_keys = [rbt_lock_key(request.rbt_id)]
        try:
            async with self.database.transaction(lock_keys) as tx:
                overlapping = await self.database.sessions.find_active_by_date_range(
                    request.start_date, request.end_date, tx=tx
                )
                affected = [
                    s for s in overlapping
                    if s.rbt_id == request.rbt_id and s.status in MUTABLE_STATUSES
                ]
                event = await self.database.audit_log.record(
                    ScheduleEvent(
                        id=generate_id("evt"),
                        event_type=ScheduleEventType.RBT_UNAVAILABLE,
                        rbt_id=request.rbt_id,
                        new_values={
                            "start_date": request.start_date.isoformat(),
                            "end_date": request.end_date.isoformat(),
                            "unavailability_type": request.unavailability_type.value,
                            "affected_session_ids": [s.id for s in affected],
                        },
                        reason=request.reason,
                        metadata={"unavailability_type": request.unavailability_type.value},
                        created_by=request.reported_by,
                        created_at=now,
                    ),
                    tx=tx,
                )
        except TransactionError as e:
            self.event_logger.log_transaction_failed("process_rbt_unavailability", e.message, lock_keys)
            return RBTUnavailabilityResponse(
                success=False,
                outcome=SchedulingOutcome.TRANSACTION_ERROR,
                message=e.message,
                rbt_id=request.rbt_id,
            )

        logger.info(
            f"Caregiver {request.rbt_id} unavailable {request.start_date.isoformat()} to "
            f"{request.end_date.isoformat()}: {len(affected)} sessions affected"
        )

        response = RBTUnavailabilityResponse(
            success=True,
            outcome=SchedulingOutcome.SUCCESS,
            message=f"Unavailability recorded, {len(affected)} sessions affected",
            rbt_id=request.rbt_id,
            schedule_event=event,
            affected_sessions=len(affected),
        )
        if not request.auto_reassign:
            return response

        for session in affected:
            result = await self.reassign_session(
                session.id, request.rbt_id, request.reported_by, request.reason, now
            )
            if result.success:
                response.reassigned.append(result)
            else:
                response.failed.append(result)

        response.message = (
            f"Unavailability recorded, {len(response.reassigned)} of {len(affected)} sessions reassigned"
        )
        return response

    async def reassign_session(
        self,
        session_id: str,
        unavailable_rbt_id: str,
        reassigned_by: str,
        reason: str,
        reference_date: Optional[datetime] = None
    ) -> SessionReassignmentResult:
        """Move one session to the free team member with the best continuity"""

        reference_date = reference_date or self.clock.now()
        session = await self.database.sessions.find_by_id(session_id)
        if session is None:
            return SessionReassignmentResult(
                session_id=session_id,
                client_id="",
                original_rbt_id=unavailable_rbt_id,
                success=False,
                message="Session not found",
            )

        def failed(message: str) -> SessionReassignmentResult:
            logger.warning(f"Could not reassign session {session_id}: {message}")
            return SessionReassignmentResult(
                session_id=session_id,
                client_id=session.client_id,
                original_rbt_id=unavailable_rbt_id,
                success=False,
                message=message,
            )

        team = await self.database.teams.find_active_team_for_client(session.client_id, at=session.start_time)
        if team is None:
            return failed(f"No active team found for client {session.client_id}")

        candidates = [
            rbt_id for rbt_id in team.rbt_ids
            if rbt_id != unavailable_rbt_id and await self.database.caregivers.is_active(rbt_id)
        ]
        if not candidates:
            return failed("No other active caregivers on the client's team")

        lock_keys = [session_lock_key(session_id), client_lock_key(session.client_id)]
        lock_keys += [rbt_lock_key(rbt_id) for rbt_id in [unavailable_rbt_id] + candidates]

        try:
            async with self.database.transaction(lock_keys) as tx:
                current = await self.database.sessions.find_by_id(session_id, tx=tx)
                if current is None or current.status not in MUTABLE_STATUSES or current.rbt_id != unavailable_rbt_id:
                    return failed("Session no longer needs reassignment")

                day_sessions = await self.database.sessions.find_active_by_date_range(
                    start_of_day(current.start_time), end_of_day(current.start_time), tx=tx
                )
                scored = []
                for index, rbt_id in enumerate(candidates):
                    clashes = await self.database.sessions.check_conflicts(
                        current.client_id, rbt_id, current.start_time, current.end_time,
                        exclude_session_id=current.id, tx=tx
                    )
                    if clashes:
                        continue
                    if self.validator.validate_caregiver_load(rbt_id, current.start_time, current.end_time, day_sessions):
                        continue
                    continuity = await self.continuity.score(rbt_id, current.client_id, reference_date)
                    scored.append((continuity.score, index, rbt_id))

                if not scored:
                    return failed("No team caregiver is free at this time")

                best_score, _, best_rbt_id = sorted(scored, key=lambda item: (-item[0], item[1]))[0]
                updated = current.model_copy(update={
                    "rbt_id": best_rbt_id,
                    "updated_by": reassigned_by,
                    "updated_at": reference_date,
                })
                await self.database.sessions.update(updated, tx=tx)
                await self.database.audit_log.record(
                    session_event(
                        ScheduleEventType.SESSION_RESCHEDULED,
                        current,
                        created_by=reassigned_by,
                        created_at=reference_date,
                        old_values=current.audit_snapshot(),
                        new_values=updated.audit_snapshot(),
                        reason=reason,
                        metadata={
                            "source": UNAVAILABILITY_SOURCE,
                            "unavailable_rbt_id": unavailable_rbt_id,
                            "new_rbt_id": best_rbt_id,
                        },
                    ),
                    tx=tx,
                )
        except PERSISTENCE_EXCEPTIONS as e:
            self.event_logger.log_transaction_failed("reassign_session", e.message, lock_keys)
            return failed(e.message)

        if self.continuity_cache is not None:
            await self.continuity_cache.invalidate_client(session.client_id)

        logger.info(f"Session {session_id} reassigned from {unavailable_rbt_id} to {best_rbt_id}")
        return SessionReassignmentResult(
            session_id=session_id,
            client_id=session.client_id,
            original_rbt_id=unavailable_rbt_id,
            new_rbt_id=best_rbt_id,
            success=True,
            message=f"Reassigned to caregiver {best_rbt_id}",
            continuity_score=best_score,
        )
