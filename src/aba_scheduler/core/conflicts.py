"""
Conflict detection for caregiver and client double-booking
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from ..models import ConflictSeverity, ConflictType, SchedulingConflict, Session

logger = logging.getLogger(__name__)


def intervals_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Half-open [start, end) overlap test; touching intervals do not overlap"""
    return start1 < end2 and start2 < end1


def _normalize_location(location: Optional[str]) -> str:
    return " ".join((location or "").lower().split())


class ConflictDetector:
    """Detects overlaps between a proposed session and existing active sessions"""

    def __init__(self):
        logger.info("Conflict detector initialized")

    def detect_conflicts(
        self,
        sessions: Iterable[Session],
        start_time: datetime,
        end_time: datetime,
        rbt_id: str,
        client_id: str,
        location: Optional[str] = None,
        exclude_session_id: Optional[str] = None
    ) -> List[SchedulingConflict]:
        """Return every conflict for the proposed slot (never stops at the first)"""

        conflicts = []
        proposed_location = _normalize_location(location)

        for session in sessions:
            if not session.is_active or session.id == exclude_session_id:
                continue
            if not intervals_overlap(start_time, end_time, session.start_time, session.end_time):
                continue

            window = f"{session.start_time.strftime('%Y-%m-%d %H:%M')}-{session.end_time.strftime('%H:%M')}"
            same_rbt = session.rbt_id == rbt_id
            same_client = session.client_id == client_id

            if same_rbt and same_client:
                conflicts.append(SchedulingConflict(
                    conflict_type=ConflictType.TIME_OVERLAP,
                    severity=ConflictSeverity.ERROR,
                    description=f"Client {client_id} already has a session with caregiver {rbt_id} at {window}",
                    conflicting_session_id=session.id,
                    suggested_resolution="Reschedule or cancel the existing session first"
                ))
                continue

            if same_rbt:
                conflicts.append(SchedulingConflict(
                    conflict_type=ConflictType.RBT_DOUBLE_BOOKING,
                    severity=ConflictSeverity.ERROR,
                    description=f"Caregiver {rbt_id} is already booked with client {session.client_id} at {window}",
                    conflicting_session_id=session.id,
                    suggested_resolution="Choose another caregiver or time"
                ))
            if same_client:
                conflicts.append(SchedulingConflict(
                    conflict_type=ConflictType.CLIENT_DOUBLE_BOOKING,
                    severity=ConflictSeverity.ERROR,
                    description=f"Client {client_id} already has a session with caregiver {session.rbt_id} at {window}",
                    conflicting_session_id=session.id,
                    suggested_resolution="Choose another time for this client"
                ))
            if (
                not same_rbt
                and not same_client
                and proposed_location
                and proposed_location == _normalize_location(session.location)
            ):
                conflicts.append(SchedulingConflict(
                    conflict_type=ConflictType.LOCATION_CONFLICT,
                    severity=ConflictSeverity.WARNING,
                    description=f"Location '{location}' is also used by session {session.id} at {window}",
                    conflicting_session_id=session.id,
                    suggested_resolution="Confirm the location can host both sessions"
                ))

        if conflicts:
            logger.debug(
                f"Detected {len(conflicts)} conflicts for client {client_id} / caregiver {rbt_id} "
                f"at {start_time.isoformat()}"
            )
        return conflicts

    @staticmethod
    def has_blocking(conflicts: Iterable[SchedulingConflict]) -> bool:
        return any(c.is_blocking for c in conflicts)

    def find_double_bookings(self, sessions: Iterable[Session]) -> List[SchedulingConflict]:
        """Sweep a set of sessions for caregiver or client overlaps among themselves"""

        active = sorted((s for s in sessions if s.is_active), key=lambda s: (s.start_time, s.id))
        conflicts = []

        for i, session in enumerate(active):
            for other in active[i + 1:]:
                if other.start_time >= session.end_time:
                    break
                if other.rbt_id == session.rbt_id:
                    conflicts.append(SchedulingConflict(
                        conflict_type=ConflictType.RBT_DOUBLE_BOOKING,
                        severity=ConflictSeverity.ERROR,
                        description=f"Caregiver {session.rbt_id} is booked in sessions {session.id} and {other.id} at once",
                        conflicting_session_id=other.id,
                        suggested_resolution=f"Move or reassign session {other.id}"
                    ))
                if other.client_id == session.client_id:
                    conflicts.append(SchedulingConflict(
                        conflict_type=ConflictType.CLIENT_DOUBLE_BOOKING,
                        severity=ConflictSeverity.ERROR,
                        description=f"Client {session.client_id} is booked in sessions {session.id} and {other.id} at once",
                        conflicting_session_id=other.id,
                        suggested_resolution=f"Move or cancel session {other.id}"
                    ))

        return conflicts

    def find_free_slots(
        self,
        window_start: datetime,
        window_end: datetime,
        busy: Iterable[Session],
        duration: timedelta,
        min_break: timedelta = timedelta(0),
        step: timedelta = timedelta(minutes=30)
    ) -> List[Tuple[datetime, datetime]]:
        """Start/end pairs of length `duration` inside the window that avoid busy sessions"""

        occupied = sorted(
            (s.start_time - min_break, s.end_time + min_break)
            for s in busy if s.is_active
        )
        slots = []
        candidate = window_start

        while candidate + duration <= window_end:
            candidate_end = candidate + duration
            blocker = next(
                (end for start, end in occupied if intervals_overlap(candidate, candidate_end, start, end)),
                None
            )
            if blocker is None:
                slots.append((candidate, candidate_end))
                candidate = candidate_end
            else:
                # Jump past the blocking session, staying on the step grid
                while candidate < blocker:
                    candidate += step

        return slots
