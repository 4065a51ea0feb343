"""
Wiring of the scheduling services around one database and clock
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..config import Settings, get_settings
from ..database import Database
from ..logging_config import SchedulingEventLogger, event_logger
from ..models import SchedulingConstraints
from .analytics import DisruptionAnalytics
from .cache import CacheManager, ContinuityCache
from .cancellation import SessionCancellationService
from .clock import Clock, SystemClock
from .conflicts import ConflictDetector
from .continuity import AssignmentSelector, ContinuityLookup, ContinuityScorer
from .scheduler import SessionScheduler
from .unavailability import RBTUnavailabilityService
from .validator import ConstraintValidator

logger = logging.getLogger(__name__)


@dataclass
class SchedulingServices:
    """One set of collaborating services sharing a database, clock and cache"""

    database: Database
    clock: Clock
    settings: Settings
    constraints: SchedulingConstraints
    cache_manager: CacheManager
    continuity_cache: ContinuityCache
    validator: ConstraintValidator
    detector: ConflictDetector
    scorer: ContinuityScorer
    selector: AssignmentSelector
    continuity: ContinuityLookup
    scheduler: SessionScheduler
    cancellation: SessionCancellationService
    unavailability: RBTUnavailabilityService
    analytics: DisruptionAnalytics

    @classmethod
    def build(
        cls,
        database: Database,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        cache_manager: Optional[CacheManager] = None,
        scheduling_logger: Optional[SchedulingEventLogger] = None
    ) -> "SchedulingServices":
        settings = settings or get_settings()
        clock = clock or SystemClock()
        cache_manager = cache_manager or CacheManager(settings)
        scheduling_logger = scheduling_logger or event_logger

        constraints = SchedulingConstraints.from_settings(settings)
        continuity_cache = ContinuityCache(cache_manager)
        validator = ConstraintValidator(constraints)
        detector = ConflictDetector()
        scorer = ContinuityScorer(clock)
        selector = AssignmentSelector(scorer)
        continuity = ContinuityLookup(database.sessions, scorer, continuity_cache)

        scheduler = SessionScheduler(
            database,
            constraints,
            validator,
            detector,
            selector,
            clock,
            continuity_cache=continuity_cache,
            alternative_search_days=settings.alternative_slot_search_days,
            max_alternative_slots=settings.max_alternative_slots,
            scheduling_logger=scheduling_logger,
        )
        cancellation = SessionCancellationService(
            database,
            continuity,
            clock,
            continuity_cache=continuity_cache,
            opportunity_concurrency=settings.opportunity_concurrency,
            max_alternative_opportunities=settings.max_alternative_opportunities,
            bulk_cancel_max_alternatives=settings.bulk_cancel_max_alternatives,
            reschedule_search_days=settings.reschedule_search_days,
            max_reschedule_opportunities=settings.max_reschedule_opportunities,
            scheduling_logger=scheduling_logger,
        )
        unavailability = RBTUnavailabilityService(
            database,
            continuity,
            validator,
            clock,
            continuity_cache=continuity_cache,
            scheduling_logger=scheduling_logger,
        )
        analytics = DisruptionAnalytics(
            database,
            clock,
            trend_change_threshold=settings.trend_change_threshold,
            trend_min_days=settings.trend_min_days,
            client_disruption_alert_rate=settings.client_disruption_alert_rate,
            rbt_disruption_alert_rate=settings.rbt_disruption_alert_rate,
            rbt_unavailability_alert_count=settings.rbt_unavailability_alert_count,
            rbt_caused_disruption_alert_count=settings.rbt_caused_disruption_alert_count,
            high_disruption_count=settings.high_disruption_count,
            top_reasons_limit=settings.top_reasons_limit,
            scheduling_logger=scheduling_logger,
        )

        logger.info(f"Scheduling services built on {type(database).__name__}")
        return cls(
            database=database,
            clock=clock,
            settings=settings,
            constraints=constraints,
            cache_manager=cache_manager,
            continuity_cache=continuity_cache,
            validator=validator,
            detector=detector,
            scorer=scorer,
            selector=selector,
            continuity=continuity,
            scheduler=scheduler,
            cancellation=cancellation,
            unavailability=unavailability,
            analytics=analytics,
        )
