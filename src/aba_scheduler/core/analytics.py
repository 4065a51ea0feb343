"""
Disruption analytics over the schedule event log
"""
import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from ..database import Database
from ..logging_config import SchedulingEventLogger, event_logger
from ..models import (
    DISRUPTION_EVENT_TYPES,
    AuditTrail,
    AuditTrailEntry,
    ClientDisruptionProfile,
    DisruptionFrequencyReport,
    DisruptionImpactAnalysis,
    DisruptionMetrics,
    EntityType,
    EventQuery,
    RbtDisruptionProfile,
    ReasonFrequency,
    ScheduleEvent,
    ScheduleEventType,
    TrendDirection,
)
from ..utils.exceptions import ValidationError
from ..utils.helpers import clamp, hours_between, parse_iso_datetime, round_to, safe_division
from .clock import Clock
from .unavailability import UNAVAILABILITY_SOURCE
from .validator import WEEKDAY_NAMES

logger = logging.getLogger(__name__)

UNKNOWN_REASON = "Unknown"
NO_DISRUPTIONS = "No disruptions"

# Client impact: share of disrupted sessions plus a penalty per cancellation
CANCELLATION_IMPACT_POINTS = 5
CONTINUITY_IMPACT_FACTOR = 2


class DisruptionAnalytics:
    """Reports on cancellations, reschedules and caregiver unavailability"""

    def __init__(
        self,
        database: Database,
        clock: Clock,
        trend_change_threshold: float = 20.0,
        trend_min_days: int = 14,
        client_disruption_alert_rate: float = 20.0,
        rbt_disruption_alert_rate: float = 15.0,
        rbt_unavailability_alert_count: int = 5,
        rbt_caused_disruption_alert_count: int = 3,
        high_disruption_count: int = 10,
        top_reasons_limit: int = 10,
        scheduling_logger: Optional[SchedulingEventLogger] = None
    ):
        self.database = database
        self.clock = clock
        self.trend_change_threshold = trend_change_threshold
        self.trend_min_days = trend_min_days
        self.client_disruption_alert_rate = client_disruption_alert_rate
        self.rbt_disruption_alert_rate = rbt_disruption_alert_rate
        self.rbt_unavailability_alert_count = rbt_unavailability_alert_count
        self.rbt_caused_disruption_alert_count = rbt_caused_disruption_alert_count
        self.high_disruption_count = high_disruption_count
        self.top_reasons_limit = top_reasons_limit
        self.event_logger = scheduling_logger or event_logger

    @staticmethod
    def _check_range(start_date: datetime, end_date: datetime):
        if end_date < start_date:
            raise ValidationError(
                "end_date must not be before start_date",
                field="end_date",
                value=end_date.isoformat(),
            )

    async def _disruption_events(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None
    ) -> List[ScheduleEvent]:
        return await self.database.audit_log.query(EventQuery(
            event_types=list(DISRUPTION_EVENT_TYPES),
            start_date=start_date,
            end_date=end_date,
            client_id=client_id,
            rbt_id=rbt_id,
        ))

    async def generate_disruption_frequency_report(
        self,
        start_date: datetime,
        end_date: datetime
    ) -> DisruptionFrequencyReport:
        """
        Practice-wide disruption report for a date range.

        Combines frequency metrics, impact analysis, the most frequent
        reasons and hour/weekday histograms of disruption events.
        """
        self._check_range(start_date, end_date)
        started = time.perf_counter()

        events = await self._disruption_events(start_date, end_date)
        total_sessions = await self.database.sessions.count_by_date_range(start_date, end_date)

        report = DisruptionFrequencyReport(
            start_date=start_date,
            end_date=end_date,
            generated_at=self.clock.now(),
            total_sessions=total_sessions,
            metrics=self._metrics(events, total_sessions, start_date, end_date),
            impact_analysis=self._impact_analysis(events, total_sessions),
            top_reasons=self._top_reasons(events),
            disruptions_by_hour=self._by_hour(events),
            disruptions_by_day_of_week=self._by_day_of_week(events),
        )

        self.event_logger.log_report_generated(
            "disruption_frequency", start_date, end_date, time.perf_counter() - started
        )
        logger.info(
            f"Disruption report {start_date.date()} to {end_date.date()}: "
            f"{report.metrics.total_disruptions} disruptions over {total_sessions} sessions"
        )
        return report

    def _metrics(
        self,
        events: Sequence[ScheduleEvent],
        total_sessions: int,
        start_date: datetime,
        end_date: datetime
    ) -> DisruptionMetrics:
        by_type = {event_type.value: 0 for event_type in ScheduleEventType}
        for event in events:
            by_type[event.event_type.value] += 1

        total = len(events)
        weeks = max(1, (end_date - start_date).days) / 7
        reasons = Counter(event.reason or UNKNOWN_REASON for event in events)

        return DisruptionMetrics(
            total_disruptions=total,
            disruptions_by_type=by_type,
            disruption_rate=round_to(safe_division(total, total_sessions) * 100),
            average_disruptions_per_week=round_to(total / weeks),
            most_common_reason=reasons.most_common(1)[0][0] if reasons else NO_DISRUPTIONS,
            trend_direction=self._trend(events, start_date, end_date),
        )

    def _trend(self, events: Sequence[ScheduleEvent], start_date: datetime, end_date: datetime) -> TrendDirection:
        total_days = (end_date - start_date).days
        if total_days < self.trend_min_days:
            return TrendDirection.STABLE

        midpoint = start_date + timedelta(days=total_days / 2)
        first_half = sum(1 for event in events if event.created_at < midpoint)
        second_half = len(events) - first_half
        if first_half == 0:
            return TrendDirection.STABLE

        change = (second_half - first_half) / first_half * 100
        if change > self.trend_change_threshold:
            return TrendDirection.INCREASING
        if change < -self.trend_change_threshold:
            return TrendDirection.DECREASING
        return TrendDirection.STABLE

    def _impact_analysis(self, events: Sequence[ScheduleEvent], total_sessions: int) -> DisruptionImpactAnalysis:
        sessions = set()
        clients = set()
        rbts = set()
        for event in events:
            if event.session_id:
                sessions.add(event.session_id)
            if event.client_id:
                clients.add(event.client_id)
            if event.rbt_id:
                rbts.add(event.rbt_id)
            for session_id in self._affected_session_ids(event):
                sessions.add(session_id)

        cancelled = sum(1 for e in events if e.event_type == ScheduleEventType.SESSION_CANCELLED)
        rescheduled = sum(1 for e in events if e.event_type == ScheduleEventType.SESSION_RESCHEDULED)

        notice_hours = [hours for hours in map(self._notice_hours, events) if hours is not None]
        average_notice = sum(notice_hours) / len(notice_hours) if notice_hours else 0.0

        impact = safe_division(len(sessions), max(total_sessions, len(sessions))) * 100
        impact += cancelled * CANCELLATION_IMPACT_POINTS

        return DisruptionImpactAnalysis(
            affected_sessions=len(sessions),
            affected_clients=len(clients),
            affected_rbts=len(rbts),
            reschedule_success_rate=round_to(safe_division(rescheduled, rescheduled + cancelled) * 100),
            average_notice_hours=round_to(average_notice),
            client_impact_score=round_to(clamp(impact, 0, 100)),
        )

    @staticmethod
    def _affected_session_ids(event: ScheduleEvent) -> List[str]:
        if event.event_type != ScheduleEventType.RBT_UNAVAILABLE:
            return []
        session_ids = (event.new_values or {}).get("affected_session_ids")
        if not isinstance(session_ids, list):
            return []
        return [session_id for session_id in session_ids if isinstance(session_id, str)]

    @staticmethod
    def _notice_hours(event: ScheduleEvent) -> Optional[float]:
        """Hours between the change and the session start it changed, if recorded"""
        if event.event_type == ScheduleEventType.RBT_UNAVAILABLE:
            return None
        session_start = parse_iso_datetime((event.old_values or {}).get("start_time"))
        if session_start is None:
            return None
        notice = hours_between(event.created_at, session_start)
        return notice if notice >= 0 else None

    def _top_reasons(self, events: Sequence[ScheduleEvent]) -> List[ReasonFrequency]:
        reasons = Counter(event.reason or UNKNOWN_REASON for event in events)
        total = len(events)
        return [
            ReasonFrequency(reason=reason, count=count, percentage=round_to(count / total * 100))
            for reason, count in reasons.most_common(self.top_reasons_limit)
        ]

    @staticmethod
    def _by_hour(events: Iterable[ScheduleEvent]) -> Dict[int, int]:
        counts = Counter(event.created_at.hour for event in events)
        return dict(sorted(counts.items()))

    @staticmethod
    def _by_day_of_week(events: Iterable[ScheduleEvent]) -> Dict[str, int]:
        counts = Counter(event.created_at.weekday() for event in events)
        return {WEEKDAY_NAMES[day]: count for day, count in sorted(counts.items())}

    async def generate_client_disruption_profile(
        self,
        client_id: str,
        start_date: datetime,
        end_date: datetime
    ) -> ClientDisruptionProfile:
        """Disruption history of one client with recommendations"""
        self._check_range(start_date, end_date)
        started = time.perf_counter()

        events = await self._disruption_events(start_date, end_date, client_id=client_id)
        total_sessions = await self.database.sessions.count_by_date_range(
            start_date, end_date, client_id=client_id
        )

        disrupted = {event.session_id for event in events if event.session_id}
        by_type = Counter(event.event_type.value for event in events)
        most_common = by_type.most_common(1)[0][0] if by_type else None
        rate = safe_division(len(disrupted), total_sessions) * 100

        profile = ClientDisruptionProfile(
            client_id=client_id,
            start_date=start_date,
            end_date=end_date,
            total_sessions=total_sessions,
            disrupted_sessions=len(disrupted),
            disruption_rate=round_to(rate),
            disruptions_by_type=dict(by_type),
            most_common_disruption_type=most_common,
            continuity_impact=round_to(min(100.0, rate * CONTINUITY_IMPACT_FACTOR)),
            recommendations=self._client_recommendations(rate, most_common, len(events)),
        )

        self.event_logger.log_report_generated(
            "client_disruption_profile", start_date, end_date, time.perf_counter() - started
        )
        return profile

    def _client_recommendations(self, rate: float, most_common: Optional[str], total_disruptions: int) -> List[str]:
        recommendations = []
        if rate > self.client_disruption_alert_rate:
            recommendations.append(
                "High disruption rate detected. Review scheduling preferences and caregiver assignments."
            )
        if most_common == ScheduleEventType.SESSION_CANCELLED.value:
            recommendations.append(
                "Frequent cancellations detected. Review client availability patterns and communication preferences."
            )
        if most_common == ScheduleEventType.SESSION_RESCHEDULED.value:
            recommendations.append(
                "Frequent rescheduling detected. Consider more flexible time slots or backup caregiver assignments."
            )
        if total_disruptions > self.high_disruption_count:
            recommendations.append(
                "Multiple disruptions detected. Consider proactive scheduling strategies."
            )
        return recommendations

    async def generate_rbt_disruption_profile(
        self,
        rbt_id: str,
        start_date: datetime,
        end_date: datetime
    ) -> RbtDisruptionProfile:
        """Disruptions caused by and affecting one caregiver"""
        self._check_range(start_date, end_date)
        started = time.perf_counter()

        events = await self._disruption_events(start_date, end_date, rbt_id=rbt_id)
        total_sessions = await self.database.sessions.count_by_date_range(
            start_date, end_date, rbt_id=rbt_id
        )

        unavailability = [e for e in events if e.event_type == ScheduleEventType.RBT_UNAVAILABLE]
        affected = [
            e for e in events
            if e.event_type != ScheduleEventType.RBT_UNAVAILABLE
            and e.metadata.get("source") != UNAVAILABILITY_SOURCE
        ]
        caused = len(unavailability)

        rate = safe_division(caused + len(affected), total_sessions) * 100
        caused_rate = safe_division(caused, total_sessions) * 100

        profile = RbtDisruptionProfile(
            rbt_id=rbt_id,
            start_date=start_date,
            end_date=end_date,
            total_sessions=total_sessions,
            caused_disruptions=caused,
            affected_by_disruptions=len(affected),
            unavailability_events=len(unavailability),
            disruption_rate=round_to(rate),
            reliability_score=round_to(clamp(100 - caused_rate, 0, 100)),
            recommendations=self._rbt_recommendations(rate, len(unavailability), caused),
        )

        self.event_logger.log_report_generated(
            "rbt_disruption_profile", start_date, end_date, time.perf_counter() - started
        )
        return profile

    def _rbt_recommendations(self, rate: float, unavailability_events: int, caused: int) -> List[str]:
        recommendations = []
        if rate > self.rbt_disruption_alert_rate:
            recommendations.append(
                "High disruption rate detected. Review availability patterns and scheduling practices."
            )
        if unavailability_events > self.rbt_unavailability_alert_count:
            recommendations.append(
                "Frequent unavailability events. Consider improving advance notice procedures."
            )
        if caused > self.rbt_caused_disruption_alert_count:
            recommendations.append(
                "Multiple disruptions caused. Review reliability and consider additional support."
            )
        return recommendations

    async def get_schedule_change_audit_trail(
        self,
        entity_type: EntityType,
        entity_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AuditTrail:
        """All schedule events for a session, caregiver or client, oldest first"""
        if start_date is not None and end_date is not None:
            self._check_range(start_date, end_date)

        events = await self.database.audit_log.get_audit_trail(entity_type, entity_id, start_date, end_date)
        by_type = Counter(event.event_type.value for event in events)

        return AuditTrail(
            entity_type=entity_type,
            entity_id=entity_id,
            start_date=start_date,
            end_date=end_date,
            total_events=len(events),
            events_by_type=dict(by_type),
            first_event_at=events[0].created_at if events else None,
            last_event_at=events[-1].created_at if events else None,
            entries=[AuditTrailEntry(event=event, description=describe_event(event)) for event in events],
        )


def _snapshot_time(values: Optional[dict], key: str) -> Optional[str]:
    moment = parse_iso_datetime((values or {}).get(key))
    return moment.strftime("%Y-%m-%d %H:%M") if moment else None


def describe_event(event: ScheduleEvent) -> str:
    """One-line human readable summary of a schedule event"""
    reason = f" ({event.reason})" if event.reason else ""

    if event.event_type == ScheduleEventType.SESSION_CREATED:
        start = _snapshot_time(event.new_values, "start_time")
        when = f" for {start}" if start else ""
        return f"Session {event.session_id} created{when} with caregiver {event.rbt_id}"

    if event.event_type == ScheduleEventType.SESSION_CANCELLED:
        return f"Session {event.session_id} cancelled by {event.created_by}{reason}"

    if event.event_type == ScheduleEventType.SESSION_RESCHEDULED:
        old_start = _snapshot_time(event.old_values, "start_time")
        new_start = _snapshot_time(event.new_values, "start_time")
        new_rbt = (event.new_values or {}).get("rbt_id")
        if new_rbt and new_rbt != event.rbt_id:
            return f"Session {event.session_id} reassigned from {event.rbt_id} to {new_rbt}{reason}"
        if old_start and new_start:
            return f"Session {event.session_id} moved from {old_start} to {new_start}{reason}"
        return f"Session {event.session_id} rescheduled{reason}"

    if event.event_type == ScheduleEventType.RBT_UNAVAILABLE:
        start = _snapshot_time(event.new_values, "start_date")
        end = _snapshot_time(event.new_values, "end_date")
        period = f" from {start} to {end}" if start and end else ""
        return f"Caregiver {event.rbt_id} unavailable{period}{reason}"

    label = event.event_type.value.replace("_", " ")
    return f"{label.capitalize()} for client {event.client_id}{reason}"
