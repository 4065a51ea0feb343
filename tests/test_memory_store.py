"""Tests for the in-memory stores and their transactions."""

import asyncio
from datetime import timedelta

import pytest

from aba_scheduler.database import client_lock_key, rbt_lock_key
from aba_scheduler.models import (
    EntityType,
    EventQuery,
    ScheduleEvent,
    ScheduleEventType,
    Session,
    SessionStatus,
)
from aba_scheduler.utils.exceptions import ConflictError, NotFoundError, TransactionError

from conftest import NOW


class TestMemoryTransaction:

    def _create_session(self, world, session_id="ses_1", client_id="client_1", rbt_id="rbt_1", day=1, hour=9):
        start = world.at(day, hour)
        return Session(
            id=session_id,
            client_id=client_id,
            rbt_id=rbt_id,
            start_time=start,
            end_time=start + timedelta(hours=3),
            created_at=NOW,
            updated_at=NOW,
        )

    @pytest.mark.asyncio
    async def test_staged_writes_hidden_until_commit(self, database, world):
        session = self._create_session(world)

        async with database.transaction([client_lock_key("client_1")]) as tx:
            await database.sessions.create(session, tx=tx)
            assert await database.sessions.find_by_id("ses_1", tx=tx) == session
            assert await database.sessions.find_by_id("ses_1") is None

        assert await database.sessions.find_by_id("ses_1") == session
        assert database.commit_count == 1
        assert database.rollback_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back(self, database, world):
        with pytest.raises(TransactionError) as exc_info:
            async with database.transaction([rbt_lock_key("rbt_1")]) as tx:
                await database.sessions.create(self._create_session(world), tx=tx)
                raise RuntimeError("disk full")

        assert exc_info.value.lock_keys == [rbt_lock_key("rbt_1")]
        assert await database.sessions.find_by_id("ses_1") is None
        assert database.rollback_count == 1
        assert database.commit_count == 0

    @pytest.mark.asyncio
    async def test_scheduler_errors_pass_through(self, database, world):
        await database.sessions.create(self._create_session(world))

        with pytest.raises(ConflictError):
            async with database.transaction([rbt_lock_key("rbt_1")]) as tx:
                await database.audit_log.record(
                    ScheduleEvent(id="evt_1", event_type=ScheduleEventType.SESSION_CREATED, created_at=NOW),
                    tx=tx,
                )
                await database.sessions.create(self._create_session(world, session_id="ses_2", client_id="client_2"), tx=tx)

        assert database.rollback_count == 1
        assert await database.audit_log.query(EventQuery()) == []

    @pytest.mark.asyncio
    async def test_closed_transaction_rejects_writes(self, database, world):
        async with database.transaction() as tx:
            pass

        with pytest.raises(TransactionError):
            await database.sessions.create(self._create_session(world), tx=tx)

    @pytest.mark.asyncio
    async def test_opposite_lock_orders_do_not_deadlock(self, database):
        order = []

        async def worker(name, keys):
            async with database.transaction(keys):
                order.append(name)
                await asyncio.sleep(0.01)

        await asyncio.wait_for(
            asyncio.gather(
                worker("first", ["rbt:a", "client:b"]),
                worker("second", ["client:b", "rbt:a"]),
            ),
            timeout=2,
        )

        assert sorted(order) == ["first", "second"]
        assert database.commit_count == 2

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self, database, world):
        async with database.transaction([client_lock_key("client_1"), rbt_lock_key("rbt_1")]):
            assert database.lock_count == 2

        with pytest.raises(TransactionError):
            async with database.transaction([client_lock_key("client_2")]):
                raise RuntimeError("disk full")

        for index in range(20):
            async with database.transaction([client_lock_key(f"client_{index}")]) as tx:
                session = self._create_session(
                    world, session_id=f"ses_{index}", client_id=f"client_{index}", rbt_id=f"rbt_{index}"
                )
                await database.sessions.create(session, tx=tx)

        assert database.lock_count == 0

    @pytest.mark.asyncio
    async def test_waiting_transaction_keeps_lock(self, database):
        release = asyncio.Event()
        order = []

        async def holder():
            async with database.transaction(["rbt:a"]):
                order.append("holder")
                await release.wait()

        async def waiter():
            async with database.transaction(["rbt:a"]):
                order.append("waiter")

        holding = asyncio.create_task(holder())
        await asyncio.sleep(0)
        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        assert database.lock_count == 1

        release.set()
        await asyncio.gather(holding, waiting)

        assert order == ["holder", "waiter"]
        assert database.lock_count == 0


class TestInMemorySessionStore:

    def _create_session(self, session_id, client_id, rbt_id, start, status=SessionStatus.SCHEDULED):
        return Session(
            id=session_id,
            client_id=client_id,
            rbt_id=rbt_id,
            start_time=start,
            end_time=start + timedelta(hours=3),
            status=status,
            created_at=NOW,
            updated_at=NOW,
        )

    @pytest.mark.asyncio
    async def test_double_booking_guard(self, database, world):
        await database.sessions.create(self._create_session("ses_1", "client_1", "rbt_1", world.at(1, 9)))

        with pytest.raises(ConflictError) as exc_info:
            await database.sessions.create(self._create_session("ses_2", "client_2", "rbt_1", world.at(1, 11)))

        assert exc_info.value.conflicting_session_ids == ["ses_1"]

    @pytest.mark.asyncio
    async def test_cancelled_sessions_do_not_block(self, database, world):
        await database.sessions.create(
            self._create_session("ses_1", "client_1", "rbt_1", world.at(1, 9), SessionStatus.CANCELLED)
        )

        created = await database.sessions.create(self._create_session("ses_2", "client_1", "rbt_1", world.at(1, 9)))

        assert created.id == "ses_2"

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, database, world):
        await database.sessions.create(self._create_session("ses_1", "client_1", "rbt_1", world.at(1, 9)))

        with pytest.raises(ConflictError):
            await database.sessions.create(self._create_session("ses_1", "client_2", "rbt_2", world.at(2, 9)))

    @pytest.mark.asyncio
    async def test_update_missing_session(self, database, world):
        with pytest.raises(NotFoundError):
            await database.sessions.update(self._create_session("ses_9", "client_1", "rbt_1", world.at(1, 9)))

    @pytest.mark.asyncio
    async def test_touching_sessions_do_not_conflict(self, database, world):
        await database.sessions.create(self._create_session("ses_1", "client_1", "rbt_1", world.at(1, 9)))

        conflicts = await database.sessions.check_conflicts(
            "client_1", "rbt_1", world.at(1, 12), world.at(1, 15)
        )

        assert conflicts == []

    @pytest.mark.asyncio
    async def test_date_range_queries(self, database, world):
        await database.sessions.create(self._create_session("ses_1", "client_1", "rbt_1", world.at(1, 9)))
        await database.sessions.create(self._create_session("ses_2", "client_2", "rbt_2", world.at(1, 9)))
        await database.sessions.create(
            self._create_session("ses_3", "client_1", "rbt_1", world.at(2, 9), SessionStatus.CANCELLED)
        )

        in_range = await database.sessions.find_by_date_range(world.at(1, 0), world.at(3, 0), client_id="client_1")
        active = await database.sessions.find_active_by_date_range(world.at(1, 0), world.at(3, 0))

        assert [s.id for s in in_range] == ["ses_1", "ses_3"]
        assert {s.id for s in active} == {"ses_1", "ses_2"}
        assert await database.sessions.count_by_date_range(world.at(1, 0), world.at(3, 0), rbt_id="rbt_1") == 2


class TestInMemoryAuditLog:

    def _create_event(self, event_id, minutes, **kwargs):
        return ScheduleEvent(
            id=event_id,
            event_type=kwargs.pop("event_type", ScheduleEventType.SESSION_CANCELLED),
            created_at=NOW + timedelta(minutes=minutes),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_query_orders_by_creation_time(self, database):
        await database.audit_log.record(self._create_event("evt_2", 10, client_id="client_1"))
        await database.audit_log.record(self._create_event("evt_1", 5, client_id="client_1"))
        await database.audit_log.record(self._create_event("evt_3", 10, client_id="client_1"))

        events = await database.audit_log.query(EventQuery(client_id="client_1"))

        assert [e.id for e in events] == ["evt_1", "evt_2", "evt_3"]

    @pytest.mark.asyncio
    async def test_query_filters(self, database):
        await database.audit_log.record(self._create_event("evt_1", 0, rbt_id="rbt_1"))
        await database.audit_log.record(
            self._create_event("evt_2", 30, rbt_id="rbt_1", event_type=ScheduleEventType.RBT_UNAVAILABLE)
        )
        await database.audit_log.record(self._create_event("evt_3", 60, rbt_id="rbt_2"))

        by_type = await database.audit_log.query(EventQuery(event_types=[ScheduleEventType.RBT_UNAVAILABLE]))
        by_window = await database.audit_log.query(
            EventQuery(rbt_id="rbt_1", start_date=NOW + timedelta(minutes=15), end_date=NOW + timedelta(hours=2))
        )

        assert [e.id for e in by_type] == ["evt_2"]
        assert [e.id for e in by_window] == ["evt_2"]

    @pytest.mark.asyncio
    async def test_audit_trail_by_entity(self, database):
        await database.audit_log.record(
            self._create_event("evt_1", 0, session_id="ses_1", client_id="client_1", rbt_id="rbt_1")
        )
        await database.audit_log.record(
            self._create_event("evt_2", 5, session_id="ses_2", client_id="client_2", rbt_id="rbt_1")
        )

        assert [e.id for e in await database.audit_log.get_audit_trail(EntityType.SESSION, "ses_2")] == ["evt_2"]
        assert [e.id for e in await database.audit_log.get_audit_trail(EntityType.RBT, "rbt_1")] == ["evt_1", "evt_2"]
        assert [e.id for e in await database.audit_log.get_audit_trail(EntityType.CLIENT, "client_1")] == ["evt_1"]


class TestCaregiverDirectory:

    @pytest.mark.asyncio
    async def test_unknown_caregiver_is_inactive(self, database, world):
        await world.add_caregiver("rbt_1")
        await world.add_caregiver("rbt_2", is_active=False)

        assert await database.caregivers.is_active("rbt_1")
        assert not await database.caregivers.is_active("rbt_2")
        assert not await database.caregivers.is_active("rbt_9")

    @pytest.mark.asyncio
    async def test_health_check(self, database):
        assert await database.health_check()
