"""
Core business logic for the ABA Session Scheduler

- Constraint validation and conflict detection
- Continuity scoring and caregiver selection
- Session scheduling, cancellation and reassignment
- Disruption analytics over the schedule event log
"""

from .analytics import DisruptionAnalytics
from .cache import CacheManager, ContinuityCache
from .cancellation import SessionCancellationService
from .clock import Clock, FixedClock, SystemClock
from .conflicts import ConflictDetector, intervals_overlap
from .continuity import AssignmentSelector, ContinuityLookup, ContinuityScorer
from .scheduler import SessionScheduler
from .services import SchedulingServices
from .unavailability import RBTUnavailabilityService
from .validator import ConstraintValidator

__all__ = [
    "AssignmentSelector",
    "CacheManager",
    "Clock",
    "ConflictDetector",
    "ConstraintValidator",
    "ContinuityCache",
    "ContinuityLookup",
    "ContinuityScorer",
    "DisruptionAnalytics",
    "FixedClock",
    "RBTUnavailabilityService",
    "SchedulingServices",
    "SessionCancellationService",
    "SessionScheduler",
    "SystemClock",
    "intervals_overlap",
]
