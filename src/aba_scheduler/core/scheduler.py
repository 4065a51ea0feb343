"""
Session scheduling: validation, conflict detection, caregiver selection and persistence
"""
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence

from ..database import Database, client_lock_key, rbt_lock_key, session_lock_key
from ..logging_config import SchedulingEventLogger, event_logger
from ..models import (
    MUTABLE_STATUSES,
    AlternativeTimeSlot,
    AvailabilityTier,
    BulkScheduleResponse,
    ConstraintViolation,
    RecurringScheduleRequest,
    ScheduleEventType,
    ScheduleSessionRequest,
    SchedulingConflict,
    SchedulingConstraints,
    SchedulingOutcome,
    SchedulingResult,
    Session,
    SessionStatus,
    Team,
)
from ..utils.exceptions import ConflictError, NotFoundError, SchedulerError, TransactionError
from ..utils.helpers import end_of_day, generate_id, get_monday_of_week, start_of_day
from .cache import ContinuityCache
from .clock import Clock
from .conflicts import ConflictDetector
from .continuity import AssignmentSelector
from .events import session_event
from .validator import ConstraintValidator

logger = logging.getLogger(__name__)

TIER_WEIGHTS = {
    AvailabilityTier.PREFERRED: 3,
    AvailabilityTier.AVAILABLE: 2,
    AvailabilityTier.POSSIBLE: 1,
}
AVAILABLE_TIER_MAX_DAYS = 3


def _failure(outcome: SchedulingOutcome, message: str, **kwargs) -> SchedulingResult:
    return SchedulingResult(success=False, outcome=outcome, message=message, **kwargs)


def _dedupe_conflicts(conflicts: Sequence[SchedulingConflict]) -> List[SchedulingConflict]:
    seen = set()
    unique = []
    for conflict in conflicts:
        key = (conflict.conflict_type, conflict.conflicting_session_id, conflict.description)
        if key not in seen:
            seen.add(key)
            unique.append(conflict)
    return unique


class SessionScheduler:
    """Schedules, reschedules and bulk-schedules therapy sessions"""

    def __init__(
        self,
        database: Database,
        constraints: SchedulingConstraints,
        validator: ConstraintValidator,
        detector: ConflictDetector,
        selector: AssignmentSelector,
        clock: Clock,
        continuity_cache: Optional[ContinuityCache] = None,
        alternative_search_days: int = 7,
        max_alternative_slots: int = 10,
        scheduling_logger: Optional[SchedulingEventLogger] = None
    ):
        self.database = database
        self.constraints = constraints
        self.validator = validator
        self.detector = detector
        self.selector = selector
        self.clock = clock
        self.continuity_cache = continuity_cache
        self.alternative_search_days = alternative_search_days
        self.max_alternative_slots = max_alternative_slots
        self.event_logger = scheduling_logger or event_logger
        logger.info("Session scheduler initialized")

    async def validate_only(self, request: ScheduleSessionRequest) -> SchedulingResult:
        """Dry run: validate, detect conflicts and select a caregiver without persisting"""
        return await self.schedule_session(request, validate_only=True)

    async def schedule_session(
        self,
        request: ScheduleSessionRequest,
        validate_only: bool = False
    ) -> SchedulingResult:
        """Schedule a single session, selecting a caregiver from the client's team when none is given"""

        start_time = request.start_time
        end_time = request.end_time or start_time + self.constraints.session_duration
        now = self.clock.now()

        result = await self._precheck(request, start_time, end_time, now, validate_only)
        if result is None:
            team = await self.database.teams.find_active_team_for_client(request.client_id, at=start_time)
            result = await self._check_team(request, team, validate_only)
            if result is None:
                candidates = [request.rbt_id] if request.rbt_id else list(team.rbt_ids)
                lock_keys = [client_lock_key(request.client_id)] + [rbt_lock_key(r) for r in candidates]
                try:
                    async with self.database.transaction(lock_keys) as tx:
                        result = await self._schedule_in_transaction(
                            tx, request, start_time, end_time, team, candidates, now, validate_only
                        )
                except ConflictError as e:
                    logger.warning(f"Store rejected session for client {request.client_id}: {e.message}")
                    result = _failure(SchedulingOutcome.CONFLICT, e.message, dry_run=validate_only)
                except TransactionError as e:
                    self.event_logger.log_transaction_failed("schedule_session", e.message, lock_keys)
                    result = _failure(SchedulingOutcome.TRANSACTION_ERROR, e.message, dry_run=validate_only)

        if result.success:
            if not validate_only and self.continuity_cache is not None:
                await self.continuity_cache.invalidate_client(request.client_id)
            self.event_logger.log_session_scheduled(
                session_id=result.session_id or "",
                client_id=request.client_id,
                rbt_id=result.rbt_selection.selected_rbt_id if result.rbt_selection else request.rbt_id,
                start_time=start_time,
                selection_reason=result.rbt_selection.selection_reason if result.rbt_selection else None,
                dry_run=validate_only,
            )
        else:
            if result.outcome == SchedulingOutcome.CONFLICT:
                self.event_logger.log_scheduling_conflict(
                    client_id=request.client_id,
                    start_time=start_time,
                    conflict_types=[c.conflict_type.value for c in result.conflicts],
                    rbt_id=request.rbt_id,
                )
            if request.allow_alternatives:
                result.alternatives = await self.find_alternative_time_slots(
                    request.client_id,
                    start_time,
                    max_results=request.max_alternatives,
                    rbt_id=request.rbt_id,
                )

        return result

    async def _precheck(
        self,
        request: ScheduleSessionRequest,
        start_time: datetime,
        end_time: datetime,
        now: datetime,
        validate_only: bool
    ) -> Optional[SchedulingResult]:
        violations = self.validator.validate_time_window(start_time, end_time, now)
        if violations:
            return _failure(
                SchedulingOutcome.VALIDATION_ERROR,
                "Session violates scheduling constraints",
                violations=violations,
                dry_run=validate_only,
            )

        if request.rbt_id is None:
            return None

        caregiver = await self.database.caregivers.find_by_id(request.rbt_id)
        if caregiver is None:
            return _failure(
                SchedulingOutcome.NOT_FOUND,
                f"Caregiver {request.rbt_id} not found",
                dry_run=validate_only,
            )
        if not caregiver.is_active:
            return _failure(
                SchedulingOutcome.VALIDATION_ERROR,
                f"Caregiver {request.rbt_id} is not active",
                violations=[ConstraintViolation(
                    code="rbt_inactive",
                    description=f"Caregiver {request.rbt_id} is not active",
                    suggested_resolution="Choose an active caregiver from the client's team",
                )],
                dry_run=validate_only,
            )
        return None

    async def _check_team(
        self,
        request: ScheduleSessionRequest,
        team: Optional[Team],
        validate_only: bool
    ) -> Optional[SchedulingResult]:
        if request.rbt_id is None and team is None:
            return _failure(
                SchedulingOutcome.NOT_FOUND,
                f"No active team found for client {request.client_id}",
                dry_run=validate_only,
            )
        if request.rbt_id is not None and team is not None and request.rbt_id not in team.rbt_ids:
            return _failure(
                SchedulingOutcome.VALIDATION_ERROR,
                f"Caregiver {request.rbt_id} is not on the team for client {request.client_id}",
                violations=[ConstraintViolation(
                    code="not_team_member",
                    description=f"Caregiver {request.rbt_id} is not on the team for client {request.client_id}",
                    suggested_resolution="Add the caregiver to the client's team or choose a team member",
                )],
                dry_run=validate_only,
            )
        return None

    async def _schedule_in_transaction(
        self,
        tx,
        request: ScheduleSessionRequest,
        start_time: datetime,
        end_time: datetime,
        team: Optional[Team],
        candidates: List[str],
        now: datetime,
        validate_only: bool
    ) -> SchedulingResult:
        day_sessions = await self.database.sessions.find_active_by_date_range(
            start_of_day(start_time), end_of_day(start_time), tx=tx
        )

        selection = None
        if request.rbt_id is not None:
            selected_rbt_id = request.rbt_id
            conflicts = self.detector.detect_conflicts(
                day_sessions, start_time, end_time, selected_rbt_id, request.client_id, request.location
            )
            if self.detector.has_blocking(conflicts):
                return _failure(
                    SchedulingOutcome.CONFLICT,
                    "Session conflicts with existing sessions",
                    conflicts=conflicts,
                    dry_run=validate_only,
                )
            load_violations = self.validator.validate_caregiver_load(
                selected_rbt_id, start_time, end_time, day_sessions
            )
            if load_violations:
                return _failure(
                    SchedulingOutcome.VALIDATION_ERROR,
                    "Caregiver workload rules would be violated",
                    violations=load_violations,
                    dry_run=validate_only,
                )
        else:
            available = []
            warnings: Dict[str, List[SchedulingConflict]] = {}
            blocking: List[SchedulingConflict] = []
            load_violations: List[ConstraintViolation] = []

            for rbt_id in candidates:
                if not await self.database.caregivers.is_active(rbt_id, tx=tx):
                    continue
                candidate_conflicts = self.detector.detect_conflicts(
                    day_sessions, start_time, end_time, rbt_id, request.client_id, request.location
                )
                if self.detector.has_blocking(candidate_conflicts):
                    blocking.extend(candidate_conflicts)
                    continue
                candidate_violations = self.validator.validate_caregiver_load(
                    rbt_id, start_time, end_time, day_sessions
                )
                if candidate_violations:
                    load_violations.extend(candidate_violations)
                    continue
                available.append(rbt_id)
                warnings[rbt_id] = candidate_conflicts

            if not available:
                if blocking:
                    return _failure(
                        SchedulingOutcome.CONFLICT,
                        "No team caregiver is free for this time slot",
                        conflicts=_dedupe_conflicts(blocking),
                        violations=load_violations,
                        dry_run=validate_only,
                    )
                if load_violations:
                    return _failure(
                        SchedulingOutcome.VALIDATION_ERROR,
                        "Every free team caregiver would exceed workload rules",
                        violations=load_violations,
                        dry_run=validate_only,
                    )
                return _failure(
                    SchedulingOutcome.VALIDATION_ERROR,
                    f"No active caregivers on the team for client {request.client_id}",
                    violations=[ConstraintViolation(
                        code="no_active_caregivers",
                        description=f"No active caregivers on the team for client {request.client_id}",
                        suggested_resolution="Add an active caregiver to the client's team",
                    )],
                    dry_run=validate_only,
                )

            history = await self.database.sessions.find_by_client_id(request.client_id, tx=tx)
            selection = self.selector.select_optimal_rbt(
                available, request.client_id, history, team, reference_date=now
            )
            selected_rbt_id = selection.selected_rbt_id
            conflicts = warnings[selected_rbt_id]

        if validate_only:
            return SchedulingResult(
                success=True,
                outcome=SchedulingOutcome.SUCCESS,
                message="Session is valid and can be scheduled",
                conflicts=conflicts,
                rbt_selection=selection,
                dry_run=True,
            )

        session = Session(
            id=generate_id("ses"),
            client_id=request.client_id,
            rbt_id=selected_rbt_id,
            start_time=start_time,
            end_time=end_time,
            status=SessionStatus.SCHEDULED,
            location=request.location,
            notes=request.notes,
            created_by=request.created_by,
            updated_by=request.created_by,
            created_at=now,
            updated_at=now,
        )
        await self.database.sessions.create(session, tx=tx)
        await self.database.audit_log.record(
            session_event(
                ScheduleEventType.SESSION_CREATED,
                session,
                created_by=request.created_by,
                created_at=now,
                new_values=session.audit_snapshot(),
                metadata={"selection_reason": selection.selection_reason} if selection else {},
            ),
            tx=tx,
        )

        return SchedulingResult(
            success=True,
            outcome=SchedulingOutcome.SUCCESS,
            message="Session scheduled successfully",
            session_id=session.id,
            session=session,
            conflicts=conflicts,
            rbt_selection=selection,
        )

    async def bulk_schedule_sessions(
        self,
        requests: Sequence[ScheduleSessionRequest],
        validate_only: bool = False
    ) -> BulkScheduleResponse:
        """Schedule each request independently; one failure never aborts the rest"""

        results = []
        for request in requests:
            try:
                result = await self.schedule_session(request, validate_only=validate_only)
            except SchedulerError as e:
                logger.error(f"Bulk scheduling item for client {request.client_id} failed: {e.message}")
                result = _failure(SchedulingOutcome.TRANSACTION_ERROR, e.message, dry_run=validate_only)
            results.append(result)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk scheduling processed {len(results)} requests: {succeeded} succeeded")
        return BulkScheduleResponse(
            total_requested=len(requests),
            successfully_scheduled=succeeded,
            failed=len(results) - succeeded,
            validate_only=validate_only,
            results=results,
        )

    def plan_recurring_sessions(self, request: RecurringScheduleRequest) -> List[ScheduleSessionRequest]:
        """Expand a recurring pattern into one request per session, capped per week"""

        times_by_day = defaultdict(list)
        for preferred in request.preferred_times:
            times_by_day[preferred.day_of_week].append(preferred.start_time)

        planned = []
        per_week: Dict[date, int] = defaultdict(int)
        current = request.start_date
        while current <= request.end_date:
            week = get_monday_of_week(current)
            for start in sorted(times_by_day.get(current.weekday(), [])):
                if per_week[week] >= request.sessions_per_week:
                    break
                planned.append(ScheduleSessionRequest(
                    client_id=request.client_id,
                    start_time=datetime.combine(current, start),
                    rbt_id=request.rbt_id,
                    location=request.location,
                    created_by=request.created_by,
                ))
                per_week[week] += 1
            current += timedelta(days=1)

        return planned

    async def bulk_schedule_recurring(self, request: RecurringScheduleRequest) -> BulkScheduleResponse:
        planned = self.plan_recurring_sessions(request)
        logger.info(f"Planned {len(planned)} recurring sessions for client {request.client_id}")
        return await self.bulk_schedule_sessions(planned, validate_only=request.validate_only)

    async def reschedule_session(
        self,
        session_id: str,
        new_start_time: datetime,
        updated_by: str = "system",
        reason: Optional[str] = None
    ) -> SchedulingResult:
        """Move a scheduled or confirmed session to a new start time"""

        new_end_time = new_start_time + self.constraints.session_duration
        now = self.clock.now()

        violations = self.validator.validate_time_window(new_start_time, new_end_time, now)
        if violations:
            return _failure(
                SchedulingOutcome.VALIDATION_ERROR,
                "New time violates scheduling constraints",
                session_id=session_id,
                violations=violations,
            )

        existing = await self.database.sessions.find_by_id(session_id)
        if existing is None:
            return _failure(SchedulingOutcome.NOT_FOUND, f"Session {session_id} not found", session_id=session_id)

        lock_keys = [
            session_lock_key(session_id),
            client_lock_key(existing.client_id),
            rbt_lock_key(existing.rbt_id),
        ]
        try:
            async with self.database.transaction(lock_keys) as tx:
                result = await self._reschedule_in_transaction(
                    tx, session_id, new_start_time, new_end_time, updated_by, reason, now
                )
        except NotFoundError as e:
            result = _failure(SchedulingOutcome.NOT_FOUND, e.message, session_id=session_id)
        except ConflictError as e:
            result = _failure(SchedulingOutcome.CONFLICT, e.message, session_id=session_id)
        except TransactionError as e:
            self.event_logger.log_transaction_failed("reschedule_session", e.message, lock_keys)
            result = _failure(SchedulingOutcome.TRANSACTION_ERROR, e.message, session_id=session_id)

        if result.success and self.continuity_cache is not None:
            await self.continuity_cache.invalidate_client(existing.client_id)
        return result

    async def _reschedule_in_transaction(
        self,
        tx,
        session_id: str,
        new_start_time: datetime,
        new_end_time: datetime,
        updated_by: str,
        reason: Optional[str],
        now: datetime
    ) -> SchedulingResult:
        current = await self.database.sessions.find_by_id(session_id, tx=tx)
        if current is None:
            raise NotFoundError(f"Session {session_id} not found", entity_type="session", entity_id=session_id)
        if current.status not in MUTABLE_STATUSES:
            return _failure(
                SchedulingOutcome.VALIDATION_ERROR,
                f"Cannot reschedule a {current.status.value} session",
                session_id=session_id,
            )

        day_sessions = [
            s for s in await self.database.sessions.find_active_by_date_range(
                start_of_day(new_start_time), end_of_day(new_start_time), tx=tx
            )
            if s.id != session_id
        ]
        conflicts = self.detector.detect_conflicts(
            day_sessions, new_start_time, new_end_time, current.rbt_id, current.client_id, current.location
        )
        if self.detector.has_blocking(conflicts):
            return _failure(
                SchedulingOutcome.CONFLICT,
                "New time conflicts with existing sessions",
                session_id=session_id,
                conflicts=conflicts,
            )
        load_violations = self.validator.validate_caregiver_load(
            current.rbt_id, new_start_time, new_end_time, day_sessions
        )
        if load_violations:
            return _failure(
                SchedulingOutcome.VALIDATION_ERROR,
                "Caregiver workload rules would be violated",
                session_id=session_id,
                violations=load_violations,
            )

        updated = current.model_copy(update={
            "start_time": new_start_time,
            "end_time": new_end_time,
            "updated_by": updated_by,
            "updated_at": now,
        })
        await self.database.sessions.update(updated, tx=tx)
        await self.database.audit_log.record(
            session_event(
                ScheduleEventType.SESSION_RESCHEDULED,
                current,
                created_by=updated_by,
                created_at=now,
                old_values=current.audit_snapshot(),
                new_values=updated.audit_snapshot(),
                reason=reason,
            ),
            tx=tx,
        )

        logger.info(f"Session {session_id} rescheduled to {new_start_time.isoformat()}")
        return SchedulingResult(
            success=True,
            outcome=SchedulingOutcome.SUCCESS,
            message="Session rescheduled successfully",
            session_id=session_id,
            session=updated,
            conflicts=conflicts,
        )

    async def find_alternative_time_slots(
        self,
        client_id: str,
        preferred_start: datetime,
        days_to_search: Optional[int] = None,
        max_results: Optional[int] = None,
        rbt_id: Optional[str] = None
    ) -> List[AlternativeTimeSlot]:
        """Free session slots near the preferred start for the client's team, best first"""

        days_to_search = days_to_search or self.alternative_search_days
        max_results = max_results or self.max_alternative_slots
        now = self.clock.now()

        if rbt_id is not None:
            candidates = [rbt_id]
        else:
            team = await self.database.teams.find_active_team_for_client(client_id, at=preferred_start)
            candidates = list(team.rbt_ids) if team else []
        candidates = [r for r in candidates if await self.database.caregivers.is_active(r)]
        if not candidates:
            return []

        history = await self.database.sessions.find_by_client_id(client_id)
        continuity = {
            r: self.selector.scorer.score(r, client_id, history, now).score for r in candidates
        }
        order = {r: i for i, r in enumerate(candidates)}
        duration = self.constraints.session_duration
        min_break = timedelta(minutes=self.constraints.min_break_minutes)

        slots = []
        for offset in range(days_to_search):
            day = preferred_start.date() + timedelta(days=offset)
            if day.weekday() not in self.constraints.valid_days:
                continue
            window_start = datetime.combine(day, self.constraints.business_start_time)
            window_end = datetime.combine(day, self.constraints.business_end_time)
            day_sessions = await self.database.sessions.find_active_by_date_range(window_start, window_end)
            client_sessions = [s for s in day_sessions if s.client_id == client_id]

            if offset == 0:
                tier = AvailabilityTier.PREFERRED
            elif offset <= AVAILABLE_TIER_MAX_DAYS:
                tier = AvailabilityTier.AVAILABLE
            else:
                tier = AvailabilityTier.POSSIBLE

            for candidate in candidates:
                rbt_sessions = [s for s in day_sessions if s.rbt_id == candidate]
                if len(rbt_sessions) >= self.constraints.max_sessions_per_day:
                    continue
                free = self.detector.find_free_slots(
                    window_start, window_end, rbt_sessions + client_sessions, duration, min_break
                )
                for start, end in free:
                    if self.constraints.reject_past_sessions and start < now:
                        continue
                    if start == preferred_start and candidate == rbt_id:
                        continue
                    slots.append(AlternativeTimeSlot(
                        start_time=start,
                        end_time=end,
                        rbt_id=candidate,
                        availability=tier,
                        continuity_score=continuity[candidate],
                        score=TIER_WEIGHTS[tier] * 100 + continuity[candidate],
                    ))

        slots.sort(key=lambda s: (
            -s.score,
            abs((s.start_time - preferred_start).total_seconds()),
            s.start_time,
            order[s.rbt_id],
        ))
        return slots[:max_results]
