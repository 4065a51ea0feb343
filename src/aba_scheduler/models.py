"""
Pydantic models for the ABA Session Scheduling Service
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @property
    def is_active(self) -> bool:
        """Active sessions occupy their caregiver and client"""
        return self not in (SessionStatus.CANCELLED, SessionStatus.NO_SHOW)

    def can_transition_to(self, target: "SessionStatus") -> bool:
        return target in ALLOWED_STATUS_TRANSITIONS[self]


ALLOWED_STATUS_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.SCHEDULED: frozenset({
        SessionStatus.CONFIRMED,
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
        SessionStatus.NO_SHOW,
    }),
    SessionStatus.CONFIRMED: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
        SessionStatus.NO_SHOW,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
    SessionStatus.NO_SHOW: frozenset(),
}

# Sessions that count as shared history for continuity
CONTINUITY_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.CONFIRMED})

# Sessions that may still be cancelled, rescheduled or reassigned
MUTABLE_STATUSES = frozenset({SessionStatus.SCHEDULED, SessionStatus.CONFIRMED})


class ScheduleEventType(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_RESCHEDULED = "session_rescheduled"
    RBT_UNAVAILABLE = "rbt_unavailable"
    TEAM_CREATED = "team_created"
    TEAM_UPDATED = "team_updated"
    TEAM_ENDED = "team_ended"
    RBT_ADDED = "rbt_added"
    RBT_REMOVED = "rbt_removed"
    PRIMARY_CHANGED = "primary_changed"


DISRUPTION_EVENT_TYPES = (
    ScheduleEventType.SESSION_CANCELLED,
    ScheduleEventType.SESSION_RESCHEDULED,
    ScheduleEventType.RBT_UNAVAILABLE,
)


class ConflictType(str, Enum):
    TIME_OVERLAP = "time_overlap"
    RBT_DOUBLE_BOOKING = "rbt_double_booking"
    CLIENT_DOUBLE_BOOKING = "client_double_booking"
    LOCATION_CONFLICT = "location_conflict"


class ConflictSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class SchedulingOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    TRANSACTION_ERROR = "transaction_error"


class EntityType(str, Enum):
    SESSION = "session"
    RBT = "rbt"
    CLIENT = "client"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ContinuityTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class AvailabilityTier(str, Enum):
    PREFERRED = "preferred"
    AVAILABLE = "available"
    POSSIBLE = "possible"


class UnavailabilityType(str, Enum):
    SICK = "sick"
    VACATION = "vacation"
    PERSONAL = "personal"
    TRAINING = "training"
    EMERGENCY = "emergency"
    OTHER = "other"


# Entities
class Session(BaseModel):
    """A three-hour therapy session between one client and one caregiver"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    rbt_id: str
    start_time: datetime
    end_time: datetime
    status: SessionStatus = SessionStatus.SCHEDULED
    location: Optional[str] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    created_by: str = "system"
    updated_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def duration_hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600

    def overlaps(self, start_time: datetime, end_time: datetime) -> bool:
        return self.start_time < end_time and start_time < self.end_time

    def audit_snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy of the fields tracked by schedule events"""
        return {
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "rbt_id": self.rbt_id,
            "client_id": self.client_id,
            "location": self.location,
        }


class Team(BaseModel):
    """The caregivers authorized to work with a client"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    rbt_ids: List[str] = Field(..., min_length=1)
    primary_rbt_id: str
    effective_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True

    @model_validator(mode="after")
    def primary_is_member(self):
        if len(set(self.rbt_ids)) != len(self.rbt_ids):
            raise ValueError("rbt_ids must be unique")
        if self.primary_rbt_id not in self.rbt_ids:
            raise ValueError("primary_rbt_id must be a member of rbt_ids")
        if self.end_date is not None and self.end_date < self.effective_date:
            raise ValueError("end_date must not be before effective_date")
        return self

    def is_active_on(self, moment: datetime) -> bool:
        if not self.is_active or moment < self.effective_date:
            return False
        return self.end_date is None or moment <= self.end_date


class Caregiver(BaseModel):
    """Directory entry for a credentialed caregiver (RBT)"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: Optional[str] = None
    is_active: bool = True


class ScheduleEvent(BaseModel):
    """Append-only audit record of a schedule change"""
    model_config = ConfigDict(frozen=True)

    id: str
    event_type: ScheduleEventType
    session_id: Optional[str] = None
    client_id: Optional[str] = None
    rbt_id: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: str = "system"
    created_at: datetime


class EventQuery(BaseModel):
    """Filter for reading schedule events"""
    event_types: Optional[List[ScheduleEventType]] = None
    session_id: Optional[str] = None
    client_id: Optional[str] = None
    rbt_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, event: ScheduleEvent) -> bool:
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        if self.client_id is not None and event.client_id != self.client_id:
            return False
        if self.rbt_id is not None and event.rbt_id != self.rbt_id:
            return False
        if self.start_date is not None and event.created_at < self.start_date:
            return False
        if self.end_date is not None and event.created_at > self.end_date:
            return False
        return True


# Constraints and validation results
class SchedulingConstraints(BaseModel):
    business_start_time: time = time(9, 0)
    business_end_time: time = time(19, 0)
    valid_days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])  # Monday=0
    session_duration_hours: float = Field(3.0, gt=0)
    max_sessions_per_day: int = Field(3, ge=1)
    min_break_minutes: int = Field(30, ge=0)
    reject_past_sessions: bool = True

    @property
    def session_duration(self) -> timedelta:
        return timedelta(hours=self.session_duration_hours)

    @classmethod
    def from_settings(cls, settings) -> "SchedulingConstraints":
        return cls(
            business_start_time=settings.business_start_time,
            business_end_time=settings.business_end_time,
            valid_days=list(settings.business_days),
            session_duration_hours=settings.session_duration_hours,
            max_sessions_per_day=settings.max_sessions_per_day,
            min_break_minutes=settings.min_break_minutes,
            reject_past_sessions=settings.reject_past_sessions,
        )


class ConstraintViolation(BaseModel):
    code: str
    description: str
    suggested_resolution: Optional[str] = None
    conflicting_session_id: Optional[str] = None


class SchedulingConflict(BaseModel):
    conflict_type: ConflictType
    severity: ConflictSeverity
    description: str
    conflicting_session_id: Optional[str] = None
    suggested_resolution: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == ConflictSeverity.ERROR


# Continuity
class ContinuityScore(BaseModel):
    rbt_id: str
    client_id: str
    score: float = Field(..., ge=0, le=100)
    total_sessions: int = 0
    recent_sessions: int = 0
    last_session_date: Optional[datetime] = None


class RBTClientHistory(BaseModel):
    rbt_id: str
    client_id: str
    session_count: int = 0
    first_session_date: Optional[datetime] = None
    last_session_date: Optional[datetime] = None
    recent_session_count: int = 0
    weekly_frequency: float = 0.0
    continuity_streak_weeks: int = 0
    continuity_score: float = 0.0


class ContinuityMetrics(BaseModel):
    client_id: str
    total_sessions: int = 0
    unique_rbts: int = 0
    primary_rbt_id: Optional[str] = None
    primary_rbt_share: float = 0.0
    average_continuity_score: float = 0.0
    continuity_trend: ContinuityTrend = ContinuityTrend.STABLE
    rbt_scores: List[ContinuityScore] = Field(default_factory=list)


class RBTSelectionAlternative(BaseModel):
    rbt_id: str
    continuity_score: float
    reason: str


class RBTSelectionResult(BaseModel):
    selected_rbt_id: str
    continuity_score: float
    selection_reason: str
    alternatives: List[RBTSelectionAlternative] = Field(default_factory=list)


# Scheduling requests and results
class AlternativeTimeSlot(BaseModel):
    start_time: datetime
    end_time: datetime
    rbt_id: str
    availability: AvailabilityTier
    continuity_score: float = 0.0
    score: float = 0.0


class ScheduleSessionRequest(BaseModel):
    client_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    rbt_id: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    created_by: str = "system"
    allow_alternatives: bool = False
    max_alternatives: int = Field(5, ge=1, le=50)


class SchedulingResult(BaseModel):
    success: bool
    outcome: SchedulingOutcome
    message: str
    session_id: Optional[str] = None
    session: Optional[Session] = None
    conflicts: List[SchedulingConflict] = Field(default_factory=list)
    violations: List[ConstraintViolation] = Field(default_factory=list)
    alternatives: List[AlternativeTimeSlot] = Field(default_factory=list)
    rbt_selection: Optional[RBTSelectionResult] = None
    dry_run: bool = False


class BulkScheduleRequest(BaseModel):
    sessions: List[ScheduleSessionRequest] = Field(..., min_length=1)
    validate_only: bool = False


class BulkScheduleResponse(BaseModel):
    total_requested: int
    successfully_scheduled: int
    failed: int
    validate_only: bool = False
    results: List[SchedulingResult] = Field(default_factory=list)


class PreferredTime(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)  # 0=Monday, 6=Sunday
    start_time: time


class RecurringScheduleRequest(BaseModel):
    client_id: str
    start_date: date
    end_date: date
    preferred_times: List[PreferredTime] = Field(..., min_length=1)
    sessions_per_week: int = Field(..., ge=1, le=7)
    rbt_id: Optional[str] = None
    location: Optional[str] = None
    created_by: str = "system"
    validate_only: bool = False

    @model_validator(mode="after")
    def end_not_before_start(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class RescheduleSessionRequest(BaseModel):
    new_start_time: datetime
    updated_by: str = "system"
    reason: Optional[str] = None


# Cancellation and opportunities
class CancelSessionRequest(BaseModel):
    session_id: str
    reason: str = Field(..., min_length=1)
    cancelled_by: str = "system"
    find_alternatives: bool = False
    max_alternatives: int = Field(5, ge=1, le=50)


class AlternativeOpportunity(BaseModel):
    """A freed slot matched against another client of the same caregiver"""
    client_id: str
    rbt_id: str
    start_time: datetime
    end_time: datetime
    continuity_score: float
    opportunity_score: float
    last_session_date: Optional[datetime] = None
    reason: str


class RescheduleOpportunity(BaseModel):
    """A later session of the same caregiver that could move into the freed slot"""
    session_id: str
    client_id: str
    rbt_id: str
    original_start_time: datetime
    proposed_start_time: datetime
    proposed_end_time: datetime
    days_moved: int
    impact_score: float


class CancelSessionResponse(BaseModel):
    success: bool
    outcome: SchedulingOutcome
    message: str
    session_id: str
    cancelled_session: Optional[Session] = None
    schedule_event: Optional[ScheduleEvent] = None
    alternative_opportunities: List[AlternativeOpportunity] = Field(default_factory=list)


class BulkCancelRequest(BaseModel):
    session_ids: List[str] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    cancelled_by: str = "system"
    find_alternatives: bool = True


class BulkCancelFailure(BaseModel):
    session_id: str
    error: str


class BulkCancelResponse(BaseModel):
    total_requested: int
    successful: List[CancelSessionResponse] = Field(default_factory=list)
    failed: List[BulkCancelFailure] = Field(default_factory=list)


class CancellationStats(BaseModel):
    start_date: datetime
    end_date: datetime
    total_cancellations: int = 0
    cancellations_by_reason: Dict[str, int] = Field(default_factory=dict)
    cancellations_by_rbt: Dict[str, int] = Field(default_factory=dict)
    cancellations_by_client: Dict[str, int] = Field(default_factory=dict)
    average_notice_hours: float = 0.0


# Caregiver unavailability
class RBTUnavailabilityRequest(BaseModel):
    rbt_id: str
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


class SessionReassignmentResult(BaseModel):
    session_id: str
    client_id: str
    original_rbt_id: str
    new_rbt_id: Optional[str] = None
    success: bool
    message: str
    continuity_score: float = 0.0


class RBTUnavailabilityResponse(BaseModel):
    success: bool
    outcome: SchedulingOutcome
    message: str
    rbt_id: str
    schedule_event: Optional[ScheduleEvent] = None
    affected_sessions: int = 0
    reassigned: List[SessionReassignmentResult] = Field(default_factory=list)
    failed: List[SessionReassignmentResult] = Field(default_factory=list)


# Disruption analytics
class DisruptionMetrics(BaseModel):
    total_disruptions: int = 0
    disruptions_by_type: Dict[str, int] = Field(default_factory=dict)
    disruption_rate: float = 0.0  # percent of sessions in range
    average_disruptions_per_week: float = 0.0
    most_common_reason: str = "No disruptions"
    trend_direction: TrendDirection = TrendDirection.STABLE


class DisruptionImpactAnalysis(BaseModel):
    affected_sessions: int = 0
    affected_clients: int = 0
    affected_rbts: int = 0
    reschedule_success_rate: float = 0.0
    average_notice_hours: float = 0.0
    client_impact_score: float = 0.0


class ReasonFrequency(BaseModel):
    reason: str
    count: int
    percentage: float


class DisruptionFrequencyReport(BaseModel):
    start_date: datetime
    end_date: datetime
    generated_at: datetime
    total_sessions: int = 0
    metrics: DisruptionMetrics
    impact_analysis: DisruptionImpactAnalysis
    top_reasons: List[ReasonFrequency] = Field(default_factory=list)
    disruptions_by_hour: Dict[int, int] = Field(default_factory=dict)
    disruptions_by_day_of_week: Dict[str, int] = Field(default_factory=dict)


class ClientDisruptionProfile(BaseModel):
    client_id: str
    start_date: datetime
    end_date: datetime
    total_sessions: int = 0
    disrupted_sessions: int = 0
    disruption_rate: float = 0.0
    disruptions_by_type: Dict[str, int] = Field(default_factory=dict)
    most_common_disruption_type: Optional[str] = None
    continuity_impact: float = 0.0
    recommendations: List[str] = Field(default_factory=list)


class RbtDisruptionProfile(BaseModel):
    rbt_id: str
    start_date: datetime
    end_date: datetime
    total_sessions: int = 0
    caused_disruptions: int = 0
    affected_by_disruptions: int = 0
    unavailability_events: int = 0
    disruption_rate: float = 0.0
    reliability_score: float = 100.0
    recommendations: List[str] = Field(default_factory=list)


class AuditTrailEntry(BaseModel):
    event: ScheduleEvent
    description: str


class AuditTrail(BaseModel):
    entity_type: EntityType
    entity_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_events: int = 0
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    first_event_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    entries: List[AuditTrailEntry] = Field(default_factory=list)
