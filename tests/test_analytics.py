"""Tests for disruption reports, profiles and audit trails."""

from datetime import timedelta

import pytest

from aba_scheduler.core.analytics import describe_event
from aba_scheduler.models import (
    CancelSessionRequest,
    EntityType,
    RBTUnavailabilityRequest,
    ScheduleEvent,
    ScheduleEventType,
    TrendDirection,
)
from aba_scheduler.utils.exceptions import ValidationError
from aba_scheduler.utils.helpers import generate_id


class TestDisruptionFrequencyReport:

    @pytest.mark.asyncio
    async def test_empty_range(self, services, world):
        report = await services.analytics.generate_disruption_frequency_report(world.at(0, 0), world.at(7, 0))

        assert report.metrics.total_disruptions == 0
        assert report.metrics.disruption_rate == 0
        assert report.metrics.most_common_reason == "No disruptions"
        assert report.metrics.trend_direction == TrendDirection.STABLE
        assert report.top_reasons == []
        assert report.impact_analysis.client_impact_score == 0
        assert set(report.metrics.disruptions_by_type) == {t.value for t in ScheduleEventType}

    @pytest.mark.asyncio
    async def test_cancellations_counted(self, services, world):
        await world.add_caregiver("rbt_1")
        sessions = [
            await world.add_session("client_1", "rbt_1", world.at(day, 9))
            for day in range(4)
        ]
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[1].id, reason="Sick"))
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[2].id, reason="Sick"))
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[3].id, reason="Weather"))

        report = await services.analytics.generate_disruption_frequency_report(world.at(0, 0), world.at(7, 0))

        assert report.total_sessions == 4
        assert report.metrics.total_disruptions == 3
        assert report.metrics.disruptions_by_type["session_cancelled"] == 3
        assert report.metrics.disruption_rate == 75.0
        assert report.metrics.average_disruptions_per_week == 3.0
        assert report.metrics.most_common_reason == "Sick"
        assert [(r.reason, r.count, r.percentage) for r in report.top_reasons] == [
            ("Sick", 2, 66.67),
            ("Weather", 1, 33.33),
        ]
        assert report.impact_analysis.affected_sessions == 3
        assert report.impact_analysis.affected_clients == 1
        assert report.impact_analysis.reschedule_success_rate == 0
        assert report.disruptions_by_hour == {8: 3}
        assert report.disruptions_by_day_of_week == {"Monday": 3}

    async def _record(self, database, event_type, created_at, reason=None, old_values=None):
        await database.audit_log.record(ScheduleEvent(
            id=generate_id("evt"),
            event_type=event_type,
            session_id=generate_id("ses"),
            client_id="client_1",
            rbt_id="rbt_1",
            old_values=old_values,
            reason=reason,
            created_at=created_at,
        ))

    @pytest.mark.asyncio
    async def test_increasing_trend(self, services, world, database):
        start = world.at(0, 0)
        await self._record(database, ScheduleEventType.SESSION_CANCELLED, start + timedelta(days=2, hours=10))
        for day in (15, 16, 17):
            await self._record(database, ScheduleEventType.SESSION_CANCELLED, start + timedelta(days=day, hours=10))

        report = await services.analytics.generate_disruption_frequency_report(start, start + timedelta(days=20))

        assert report.metrics.trend_direction == TrendDirection.INCREASING

    @pytest.mark.asyncio
    async def test_short_range_is_stable(self, services, world, database):
        start = world.at(0, 0)
        for day in (5, 6):
            await self._record(database, ScheduleEventType.SESSION_CANCELLED, start + timedelta(days=day))

        report = await services.analytics.generate_disruption_frequency_report(start, start + timedelta(days=7))

        assert report.metrics.trend_direction == TrendDirection.STABLE

    @pytest.mark.asyncio
    async def test_malformed_snapshots_skipped(self, services, world, database):
        start = world.at(0, 0)
        await self._record(
            database, ScheduleEventType.SESSION_RESCHEDULED, start + timedelta(hours=8),
            old_values={"start_time": "not a timestamp"},
        )
        await self._record(
            database, ScheduleEventType.SESSION_RESCHEDULED, start + timedelta(hours=8),
            old_values={"start_time": (start + timedelta(hours=18)).isoformat()},
        )
        await self._record(database, ScheduleEventType.SESSION_CANCELLED, start + timedelta(hours=9))

        report = await services.analytics.generate_disruption_frequency_report(start, start + timedelta(days=7))

        assert report.metrics.total_disruptions == 3
        assert report.impact_analysis.average_notice_hours == 10.0
        assert report.impact_analysis.reschedule_success_rate == 66.67
        assert report.metrics.most_common_reason == "Unknown"

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, services, world):
        with pytest.raises(ValidationError):
            await services.analytics.generate_disruption_frequency_report(world.at(7, 0), world.at(0, 0))


class TestDisruptionProfiles:

    async def _create_world(self, services, world):
        for rbt_id in ("rbt_1", "rbt_2"):
            await world.add_caregiver(rbt_id)
        await world.add_team("client_1", ["rbt_1", "rbt_2"], "rbt_1")
        sessions = [
            await world.add_session("client_1", "rbt_1", world.at(day, 9))
            for day in range(1, 5)
        ]
        return sessions

    @pytest.mark.asyncio
    async def test_client_profile(self, services, world):
        sessions = await self._create_world(services, world)
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[0].id, reason="Sick"))
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[1].id, reason="Sick"))

        profile = await services.analytics.generate_client_disruption_profile(
            "client_1", world.at(0, 0), world.at(7, 0)
        )

        assert profile.total_sessions == 4
        assert profile.disrupted_sessions == 2
        assert profile.disruption_rate == 50.0
        assert profile.most_common_disruption_type == "session_cancelled"
        assert profile.continuity_impact == 100.0
        assert any("High disruption rate" in r for r in profile.recommendations)
        assert any("Frequent cancellations" in r for r in profile.recommendations)

    @pytest.mark.asyncio
    async def test_quiet_client_has_no_recommendations(self, services, world):
        await self._create_world(services, world)

        profile = await services.analytics.generate_client_disruption_profile(
            "client_1", world.at(0, 0), world.at(7, 0)
        )

        assert profile.disruption_rate == 0
        assert profile.most_common_disruption_type is None
        assert profile.recommendations == []

    @pytest.mark.asyncio
    async def test_rbt_profile_separates_caused_and_affected(self, services, world):
        sessions = await self._create_world(services, world)
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[3].id, reason="Sick"))
        await services.unavailability.process_rbt_unavailability(RBTUnavailabilityRequest(
            rbt_id="rbt_1",
            start_date=world.at(1, 0),
            end_date=world.at(2, 0),
            reason="Training",
        ))

        profile = await services.analytics.generate_rbt_disruption_profile("rbt_1", world.at(0, 0), world.at(7, 0))

        assert profile.total_sessions == 3
        assert profile.caused_disruptions == 1
        assert profile.unavailability_events == 1
        assert profile.affected_by_disruptions == 1
        assert profile.reliability_score == 66.67

    @pytest.mark.asyncio
    async def test_audit_trail_ordered_with_descriptions(self, services, world):
        sessions = await self._create_world(services, world)
        await services.scheduler.reschedule_session(sessions[0].id, world.at(1, 13), reason="Family request")
        services.clock.advance(hours=1)
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[0].id, reason="Sick"))

        trail = await services.analytics.get_schedule_change_audit_trail(EntityType.SESSION, sessions[0].id)

        assert trail.total_events == 2
        assert [e.event.event_type for e in trail.entries] == [
            ScheduleEventType.SESSION_RESCHEDULED,
            ScheduleEventType.SESSION_CANCELLED,
        ]
        assert trail.first_event_at < trail.last_event_at
        assert "moved from" in trail.entries[0].description
        assert "(Sick)" in trail.entries[1].description

    @pytest.mark.asyncio
    async def test_audit_trail_for_caregiver(self, services, world):
        sessions = await self._create_world(services, world)
        await services.cancellation.cancel_session(CancelSessionRequest(session_id=sessions[0].id, reason="Sick"))

        trail = await services.analytics.get_schedule_change_audit_trail(EntityType.RBT, "rbt_2")

        assert trail.total_events == 0
        assert trail.entries == []


class TestDescribeEvent:

    def test_reassignment_description(self, world):
        event = ScheduleEvent(
            id="evt_1",
            event_type=ScheduleEventType.SESSION_RESCHEDULED,
            session_id="ses_1",
            rbt_id="rbt_1",
            new_values={"rbt_id": "rbt_2"},
            reason="Sick",
            created_at=world.at(0, 8),
        )
        assert describe_event(event) == "Session ses_1 reassigned from rbt_1 to rbt_2 (Sick)"

    def test_team_event_description(self, world):
        event = ScheduleEvent(
            id="evt_2",
            event_type=ScheduleEventType.TEAM_CREATED,
            client_id="client_1",
            created_at=world.at(0, 8),
        )
        assert describe_event(event) == "Team created for client client_1"
