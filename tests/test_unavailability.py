"""Tests for caregiver unavailability and automatic reassignment."""

import pytest

from aba_scheduler.models import (
    EventQuery,
    RBTUnavailabilityRequest,
    ScheduleEventType,
    SchedulingOutcome,
    SessionStatus,
    UnavailabilityType,
)


class TestRBTUnavailability:

    async def _create_world(self, world):
        for rbt_id in ("rbt_1", "rbt_2", "rbt_3"):
            await world.add_caregiver(rbt_id)
        await world.add_team("client_1", ["rbt_1", "rbt_2"], "rbt_1")
        await world.add_team("client_2", ["rbt_1", "rbt_3"], "rbt_1")
        first = await world.add_session("client_1", "rbt_1", world.at(1, 9))
        second = await world.add_session("client_2", "rbt_1", world.at(2, 9))
        return first, second

    def _request(self, world, **kwargs):
        return RBTUnavailabilityRequest(
            rbt_id=kwargs.pop("rbt_id", "rbt_1"),
            start_date=world.at(1, 0),
            end_date=world.at(3, 0),
            reason="Flu",
            unavailability_type=UnavailabilityType.SICK,
            reported_by="rbt_1",
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_sessions_reassigned_to_team_members(self, services, world, database):
        first, second = await self._create_world(world)

        response = await services.unavailability.process_rbt_unavailability(self._request(world))

        assert response.success
        assert response.affected_sessions == 2
        assert {(r.session_id, r.new_rbt_id) for r in response.reassigned} == {
            (first.id, "rbt_2"),
            (second.id, "rbt_3"),
        }
        assert response.failed == []
        assert (await database.sessions.find_by_id(first.id)).rbt_id == "rbt_2"
        assert (await database.sessions.find_by_id(second.id)).rbt_id == "rbt_3"

    @pytest.mark.asyncio
    async def test_events_recorded(self, services, world, database):
        first, second = await self._create_world(world)

        response = await services.unavailability.process_rbt_unavailability(self._request(world))

        event = response.schedule_event
        assert event.event_type == ScheduleEventType.RBT_UNAVAILABLE
        assert event.new_values["affected_session_ids"] == [first.id, second.id]
        assert event.new_values["unavailability_type"] == "sick"

        moves = await database.audit_log.query(EventQuery(event_types=[ScheduleEventType.SESSION_RESCHEDULED]))
        assert len(moves) == 2
        assert all(e.rbt_id == "rbt_1" for e in moves)
        assert all(e.metadata["source"] == "rbt_unavailable" for e in moves)
        assert {e.new_values["rbt_id"] for e in moves} == {"rbt_2", "rbt_3"}

    @pytest.mark.asyncio
    async def test_busy_team_member_not_used(self, services, world, database):
        first, _ = await self._create_world(world)
        await world.add_session("client_5", "rbt_2", world.at(1, 10))

        response = await services.unavailability.process_rbt_unavailability(self._request(world))

        failed = {r.session_id: r for r in response.failed}
        assert first.id in failed
        assert failed[first.id].message == "No team caregiver is free at this time"
        assert (await database.sessions.find_by_id(first.id)).rbt_id == "rbt_1"

    @pytest.mark.asyncio
    async def test_without_auto_reassign(self, services, world, database):
        first, _ = await self._create_world(world)

        response = await services.unavailability.process_rbt_unavailability(
            self._request(world, auto_reassign=False)
        )

        assert response.affected_sessions == 2
        assert response.reassigned == []
        assert (await database.sessions.find_by_id(first.id)).rbt_id == "rbt_1"

    @pytest.mark.asyncio
    async def test_cancelled_sessions_not_affected(self, services, world):
        await self._create_world(world)
        await world.add_session("client_1", "rbt_1", world.at(1, 14), SessionStatus.CANCELLED)

        response = await services.unavailability.process_rbt_unavailability(
            self._request(world, auto_reassign=False)
        )

        assert response.affected_sessions == 2

    @pytest.mark.asyncio
    async def test_unknown_caregiver(self, services, world):
        response = await services.unavailability.process_rbt_unavailability(
            self._request(world, rbt_id="rbt_404")
        )
        assert response.outcome == SchedulingOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_reassign_prefers_continuity(self, services, world, database):
        for rbt_id in ("rbt_1", "rbt_2", "rbt_3"):
            await world.add_caregiver(rbt_id)
        await world.add_team("client_1", ["rbt_1", "rbt_2", "rbt_3"], "rbt_1")
        await world.add_history("client_1", "rbt_3", [2, 4, 6])
        session = await world.add_session("client_1", "rbt_1", world.at(1, 9))

        result = await services.unavailability.reassign_session(session.id, "rbt_1", "coordinator", "Training")

        assert result.success
        assert result.new_rbt_id == "rbt_3"
        assert result.continuity_score > 0
