"""
Session validation engine for business rules and constraints
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from ..models import ConstraintViolation, SchedulingConstraints, Session

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# Tolerance on the fixed session duration, in hours
DURATION_TOLERANCE_HOURS = 0.1


class ConstraintValidator:
    """Validates proposed session windows against business hours, weekdays and caregiver load"""

    def __init__(self, constraints: SchedulingConstraints):
        self.constraints = constraints
        logger.info("Constraint validator initialized")

    def validate(
        self,
        start_time: datetime,
        end_time: datetime,
        rbt_id: Optional[str] = None,
        sessions: Iterable[Session] = (),
        now: Optional[datetime] = None
    ) -> List[ConstraintViolation]:
        """Run time window rules and, when a caregiver is given, load rules"""
        violations = self.validate_time_window(start_time, end_time, now)
        if rbt_id is not None and end_time > start_time:
            violations.extend(self.validate_caregiver_load(rbt_id, start_time, end_time, sessions))
        return violations

    def validate_time_window(
        self,
        start_time: datetime,
        end_time: datetime,
        now: Optional[datetime] = None
    ) -> List[ConstraintViolation]:
        """Validate hours, weekday, duration and past-ness of a proposed window"""

        if end_time <= start_time:
            return [ConstraintViolation(
                code="malformed_window",
                description=f"Session end {end_time.isoformat()} is not after its start {start_time.isoformat()}",
                suggested_resolution="Provide an end time after the start time"
            )]

        violations = []
        window_start = self.constraints.business_start_time
        window_end = self.constraints.business_end_time

        spans_midnight = end_time.date() != start_time.date()
        if start_time.time() < window_start or spans_midnight or end_time.time() > window_end:
            violations.append(ConstraintViolation(
                code="outside_business_hours",
                description=(
                    f"Session {start_time.strftime('%H:%M')}-{end_time.strftime('%H:%M')} falls outside "
                    f"business hours {window_start.strftime('%H:%M')}-{window_end.strftime('%H:%M')}"
                ),
                suggested_resolution="Choose a start time that keeps the whole session within business hours"
            ))

        weekday = start_time.weekday()
        if weekday not in self.constraints.valid_days:
            allowed = ", ".join(WEEKDAY_NAMES[d] for d in self.constraints.valid_days)
            violations.append(ConstraintViolation(
                code="invalid_weekday",
                description=f"Sessions cannot be scheduled on {WEEKDAY_NAMES[weekday]}",
                suggested_resolution=f"Choose one of: {allowed}"
            ))

        duration_hours = (end_time - start_time).total_seconds() / 3600
        if abs(duration_hours - self.constraints.session_duration_hours) > DURATION_TOLERANCE_HOURS:
            violations.append(ConstraintViolation(
                code="duration_mismatch",
                description=(
                    f"Session lasts {duration_hours:.2f} hours, "
                    f"sessions must be {self.constraints.session_duration_hours:g} hours"
                ),
                suggested_resolution=f"Set the end time {self.constraints.session_duration_hours:g} hours after the start"
            ))

        if self.constraints.reject_past_sessions and now is not None and start_time < now:
            violations.append(ConstraintViolation(
                code="in_past",
                description=f"Session start {start_time.isoformat()} is in the past",
                suggested_resolution="Choose a future start time"
            ))

        return violations

    def validate_caregiver_load(
        self,
        rbt_id: str,
        start_time: datetime,
        end_time: datetime,
        sessions: Iterable[Session]
    ) -> List[ConstraintViolation]:
        """Validate the daily session cap and minimum break for a caregiver"""

        same_day = [
            s for s in sessions
            if s.rbt_id == rbt_id and s.is_active and s.start_time.date() == start_time.date()
        ]
        violations = []

        if len(same_day) >= self.constraints.max_sessions_per_day:
            violations.append(ConstraintViolation(
                code="daily_limit_exceeded",
                description=(
                    f"Caregiver {rbt_id} already has {len(same_day)} sessions on "
                    f"{start_time.date().isoformat()} (max: {self.constraints.max_sessions_per_day})"
                ),
                suggested_resolution="Choose another day or another caregiver"
            ))

        min_break = self.constraints.min_break_minutes
        for session in sorted(same_day, key=lambda s: s.start_time):
            if session.overlaps(start_time, end_time):
                # Overlaps are reported by the conflict detector
                continue
            if session.end_time <= start_time:
                gap_minutes = (start_time - session.end_time).total_seconds() / 60
            else:
                gap_minutes = (session.start_time - end_time).total_seconds() / 60
            if gap_minutes < min_break:
                violations.append(ConstraintViolation(
                    code="insufficient_break",
                    description=(
                        f"Only {gap_minutes:.0f} minutes between this session and session {session.id} "
                        f"(min: {min_break})"
                    ),
                    suggested_resolution=f"Leave at least {min_break} minutes between sessions",
                    conflicting_session_id=session.id
                ))

        return violations
