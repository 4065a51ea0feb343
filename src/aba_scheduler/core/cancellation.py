"""
Session cancellation and recovery opportunity search
"""
import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from ..database import Database, client_lock_key, rbt_lock_key, session_lock_key
from ..logging_config import SchedulingEventLogger, event_logger
from ..models import (
    AlternativeOpportunity,
    BulkCancelFailure,
    BulkCancelResponse,
    CancellationStats,
    CancelSessionRequest,
    CancelSessionResponse,
    EventQuery,
    RescheduleOpportunity,
    ScheduleEventType,
    SchedulingOutcome,
    Session,
    SessionStatus,
)
from ..utils.exceptions import ConflictError, InvalidStateTransitionError, NotFoundError, TransactionError
from ..utils.helpers import hours_between, parse_iso_datetime, round_to
from .cache import ContinuityCache
from .clock import Clock
from .continuity import ContinuityLookup
from .events import session_event

logger = logging.getLogger(__name__)

# Opportunity bonuses by days since the caregiver last saw the client
LONG_GAP_DAYS = 7
LONG_GAP_BONUS = 20
SHORT_GAP_DAYS = 3
SHORT_GAP_BONUS = 10
NEW_PAIRING_BONUS = 15

RESCHEDULE_IMPACT_PER_DAY = 10


class SessionCancellationService:
    """Cancels sessions and proposes ways to reuse the freed caregiver time"""

    def __init__(
        self,
        database: Database,
        continuity: ContinuityLookup,
        clock: Clock,
        continuity_cache: Optional[ContinuityCache] = None,
        opportunity_concurrency: int = 5,
        max_alternative_opportunities: int = 5,
        bulk_cancel_max_alternatives: int = 3,
        reschedule_search_days: int = 7,
        max_reschedule_opportunities: int = 5,
        scheduling_logger: Optional[SchedulingEventLogger] = None
    ):
        self.database = database
        self.continuity = continuity
        self.clock = clock
        self.continuity_cache = continuity_cache
        self.opportunity_concurrency = opportunity_concurrency
        self.max_alternative_opportunities = max_alternative_opportunities
        self.bulk_cancel_max_alternatives = bulk_cancel_max_alternatives
        self.reschedule_search_days = reschedule_search_days
        self.max_reschedule_opportunities = max_reschedule_opportunities
        self.event_logger = scheduling_logger or event_logger
        logger.info("Session cancellation service initialized")

    async def cancel_session(self, request: CancelSessionRequest) -> CancelSessionResponse:
        """Cancel a scheduled or confirmed session and record the pre-cancel snapshot"""

        now = self.clock.now()
        existing = await self.database.sessions.find_by_id(request.session_id)
        if existing is None:
            return CancelSessionResponse(
                success=False,
                outcome=SchedulingOutcome.NOT_FOUND,
                message="Session not found",
                session_id=request.session_id,
            )

        lock_keys = [
            session_lock_key(existing.id),
            client_lock_key(existing.client_id),
            rbt_lock_key(existing.rbt_id),
        ]
        try:
            async with self.database.transaction(lock_keys) as tx:
                current = await self.database.sessions.find_by_id(request.session_id, tx=tx)
                if current is None:
                    raise NotFoundError("Session not found", entity_type="session", entity_id=request.session_id)
                self._check_cancellable(current)

                snapshot = current.audit_snapshot()
                cancelled = current.model_copy(update={
                    "status": SessionStatus.CANCELLED,
                    "cancellation_reason": request.reason,
                    "updated_by": request.cancelled_by,
                    "updated_at": now,
                })
                await self.database.sessions.update(cancelled, tx=tx)
                event = await self.database.audit_log.record(
                    session_event(
                        ScheduleEventType.SESSION_CANCELLED,
                        current,
                        created_by=request.cancelled_by,
                        created_at=now,
                        old_values=snapshot,
                        new_values=cancelled.audit_snapshot(),
                        reason=request.reason,
                    ),
                    tx=tx,
                )
        except NotFoundError as e:
            return self._failed(request, SchedulingOutcome.NOT_FOUND, e.message)
        except InvalidStateTransitionError as e:
            return self._failed(request, SchedulingOutcome.VALIDATION_ERROR, e.message)
        except ConflictError as e:
            return self._failed(request, SchedulingOutcome.CONFLICT, e.message)
        except TransactionError as e:
            self.event_logger.log_transaction_failed("cancel_session", e.message, lock_keys)
            return self._failed(request, SchedulingOutcome.TRANSACTION_ERROR, e.message)

        if self.continuity_cache is not None:
            await self.continuity_cache.invalidate_client(cancelled.client_id)
        self.event_logger.log_session_cancelled(cancelled.id, request.reason, request.cancelled_by)

        opportunities = []
        if request.find_alternatives:
            opportunities = await self.find_alternative_opportunities(cancelled, request.max_alternatives)

        return CancelSessionResponse(
            success=True,
            outcome=SchedulingOutcome.SUCCESS,
            message="Session cancelled successfully",
            session_id=cancelled.id,
            cancelled_session=cancelled,
            schedule_event=event,
            alternative_opportunities=opportunities,
        )

    @staticmethod
    def _check_cancellable(session: Session):
        if session.status == SessionStatus.CANCELLED:
            message = "Session is already cancelled"
        elif session.status == SessionStatus.COMPLETED:
            message = "Cannot cancel a completed session"
        elif not session.status.can_transition_to(SessionStatus.CANCELLED):
            message = f"Cannot cancel a session with status {session.status.value}"
        else:
            return
        raise InvalidStateTransitionError(
            message,
            session_id=session.id,
            current_status=session.status.value,
            requested_status=SessionStatus.CANCELLED.value,
        )

    @staticmethod
    def _failed(request: CancelSessionRequest, outcome: SchedulingOutcome, message: str) -> CancelSessionResponse:
        logger.warning(f"Cancellation of session {request.session_id} failed: {message}")
        return CancelSessionResponse(
            success=False,
            outcome=outcome,
            message=message,
            session_id=request.session_id,
        )

    async def find_alternative_opportunities(
        self,
        cancelled_session: Session,
        max_opportunities: Optional[int] = None
    ) -> List[AlternativeOpportunity]:
        """Other clients of the freed caregiver who could take the slot, best first"""

        max_opportunities = max_opportunities or self.max_alternative_opportunities
        rbt_id = cancelled_session.rbt_id

        if not await self.database.caregivers.is_active(rbt_id):
            logger.info(f"Caregiver {rbt_id} is unavailable, no alternative opportunities")
            return []

        teams = await self.database.teams.find_by_rbt_id(rbt_id, active_only=True)
        client_ids = list(dict.fromkeys(
            team.client_id for team in teams if team.client_id != cancelled_session.client_id
        ))
        if not client_ids:
            return []

        reference_date = self.clock.now()
        semaphore = asyncio.Semaphore(self.opportunity_concurrency)

        async def evaluate(client_id: str) -> Optional[AlternativeOpportunity]:
            async with semaphore:
                try:
                    return await self._evaluate_client(cancelled_session, client_id, reference_date)
                except Exception as e:
                    logger.error(f"Opportunity check for client {client_id} failed: {e}")
                    return None

        evaluated = await asyncio.gather(*(evaluate(client_id) for client_id in client_ids))

        # Ties keep candidate discovery order
        ranked = sorted(
            (
                (index, opportunity) for index, opportunity in enumerate(evaluated)
                if opportunity is not None
            ),
            key=lambda item: (-item[1].opportunity_score, item[0])
        )
        opportunities = [opportunity for _, opportunity in ranked[:max_opportunities]]

        self.event_logger.log_opportunities_found(cancelled_session.id, len(opportunities))
        return opportunities

    async def _evaluate_client(
        self,
        cancelled_session: Session,
        client_id: str,
        reference_date: datetime
    ) -> Optional[AlternativeOpportunity]:
        conflicts = await self.database.sessions.check_conflicts(
            client_id,
            cancelled_session.rbt_id,
            cancelled_session.start_time,
            cancelled_session.end_time,
        )
        if conflicts:
            return None

        continuity = await self.continuity.score(cancelled_session.rbt_id, client_id, reference_date)
        if continuity.last_session_date is None:
            bonus = NEW_PAIRING_BONUS
            reason = "No previous sessions together, new pairing opportunity"
        else:
            days_since = (cancelled_session.start_time - continuity.last_session_date).days
            if days_since > LONG_GAP_DAYS:
                bonus = LONG_GAP_BONUS
            elif days_since > SHORT_GAP_DAYS:
                bonus = SHORT_GAP_BONUS
            else:
                bonus = 0
            reason = f"Continuity score {continuity.score:g}, last session together {days_since} days before this slot"

        return AlternativeOpportunity(
            client_id=client_id,
            rbt_id=cancelled_session.rbt_id,
            start_time=cancelled_session.start_time,
            end_time=cancelled_session.end_time,
            continuity_score=continuity.score,
            opportunity_score=continuity.score + bonus,
            last_session_date=continuity.last_session_date,
            reason=reason,
        )

    async def find_reschedule_opportunities(
        self,
        cancelled_session: Session,
        search_days: Optional[int] = None
    ) -> List[RescheduleOpportunity]:
        """Later sessions of the same caregiver that could move into the freed slot"""

        search_days = search_days or self.reschedule_search_days
        window_end = cancelled_session.start_time + timedelta(days=search_days)
        later_sessions = await self.database.sessions.find_by_date_range(
            cancelled_session.start_time, window_end, rbt_id=cancelled_session.rbt_id
        )

        opportunities = []
        for session in later_sessions:
            if session.id == cancelled_session.id or session.status != SessionStatus.SCHEDULED:
                continue
            if session.start_time <= cancelled_session.start_time:
                continue
            blockers = await self.database.sessions.check_conflicts(
                session.client_id,
                session.rbt_id,
                cancelled_session.start_time,
                cancelled_session.end_time,
                exclude_session_id=session.id,
            )
            if blockers:
                continue

            gap = abs(session.start_time - cancelled_session.start_time)
            opportunities.append(RescheduleOpportunity(
                session_id=session.id,
                client_id=session.client_id,
                rbt_id=session.rbt_id,
                original_start_time=session.start_time,
                proposed_start_time=cancelled_session.start_time,
                proposed_end_time=cancelled_session.end_time,
                days_moved=gap.days,
                impact_score=round_to(gap.total_seconds() / 86400 * RESCHEDULE_IMPACT_PER_DAY),
            ))

        opportunities.sort(key=lambda o: (o.impact_score, o.original_start_time))
        opportunities = opportunities[:self.max_reschedule_opportunities]
        self.event_logger.log_opportunities_found(cancelled_session.id, len(opportunities), kind="reschedule")
        return opportunities

    async def bulk_cancel_sessions(
        self,
        session_ids: Sequence[str],
        reason: str,
        cancelled_by: str = "system",
        find_alternatives: bool = True
    ) -> BulkCancelResponse:
        """Cancel sessions one by one, each in its own transaction"""

        response = BulkCancelResponse(total_requested=len(session_ids))
        for session_id in session_ids:
            result = await self.cancel_session(CancelSessionRequest(
                session_id=session_id,
                reason=reason,
                cancelled_by=cancelled_by,
                find_alternatives=find_alternatives,
                max_alternatives=self.bulk_cancel_max_alternatives,
            ))
            if result.success:
                response.successful.append(result)
            else:
                response.failed.append(BulkCancelFailure(session_id=session_id, error=result.message))

        logger.info(
            f"Bulk cancellation processed {len(session_ids)} sessions: "
            f"{len(response.successful)} cancelled, {len(response.failed)} failed"
        )
        return response

    async def get_cancellation_stats(
        self,
        start_date: datetime,
        end_date: datetime,
        rbt_id: Optional[str] = None,
        client_id: Optional[str] = None
    ) -> CancellationStats:
        """Cancellation counts by reason, caregiver and client, plus average notice"""

        events = await self.database.audit_log.query(EventQuery(
            event_types=[ScheduleEventType.SESSION_CANCELLED],
            start_date=start_date,
            end_date=end_date,
            rbt_id=rbt_id,
            client_id=client_id,
        ))

        by_reason = Counter(event.reason or "Unspecified" for event in events)
        by_rbt = Counter(event.rbt_id for event in events if event.rbt_id)
        by_client = Counter(event.client_id for event in events if event.client_id)

        notice_hours = []
        for event in events:
            session_start = parse_iso_datetime((event.old_values or {}).get("start_time"))
            if session_start is None:
                continue
            notice = hours_between(event.created_at, session_start)
            if notice >= 0:
                notice_hours.append(notice)

        return CancellationStats(
            start_date=start_date,
            end_date=end_date,
            total_cancellations=len(events),
            cancellations_by_reason=dict(by_reason),
            cancellations_by_rbt=dict(by_rbt),
            cancellations_by_client=dict(by_client),
            average_notice_hours=round_to(sum(notice_hours) / len(notice_hours)) if notice_hours else 0.0,
        )
