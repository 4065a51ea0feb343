"""Shared fixtures: a fixed Monday morning clock, an in-memory database and a schedule builder."""

from datetime import datetime, time, timedelta
from typing import List, Optional

import pytest

from aba_scheduler.config import Settings
from aba_scheduler.core.cache import CacheManager
from aba_scheduler.core.clock import FixedClock
from aba_scheduler.core.services import SchedulingServices
from aba_scheduler.database import InMemoryDatabase
from aba_scheduler.models import Caregiver, Session, SessionStatus, Team
from aba_scheduler.utils.helpers import generate_id

# Monday 2024-01-08, one hour before business hours open
NOW = datetime(2024, 1, 8, 8, 0)


class ScheduleWorld:
    """Builds caregivers, teams and sessions directly in the stores"""

    def __init__(self, database: InMemoryDatabase):
        self.database = database

    @staticmethod
    def at(day_offset: int, hour: int, minute: int = 0) -> datetime:
        """Time on the day `day_offset` days after the Monday of NOW"""
        return datetime.combine(NOW.date() + timedelta(days=day_offset), time(hour, minute))

    async def add_caregiver(self, rbt_id: str, is_active: bool = True) -> Caregiver:
        return await self.database.caregivers.upsert(
            Caregiver(id=rbt_id, name=f"Caregiver {rbt_id}", is_active=is_active)
        )

    async def add_team(
        self,
        client_id: str,
        rbt_ids: List[str],
        primary_rbt_id: str,
        effective_date: Optional[datetime] = None
    ) -> Team:
        return await self.database.teams.create(Team(
            id=f"team_{client_id}",
            client_id=client_id,
            rbt_ids=rbt_ids,
            primary_rbt_id=primary_rbt_id,
            effective_date=effective_date or NOW - timedelta(days=120),
        ))

    async def add_session(
        self,
        client_id: str,
        rbt_id: str,
        start_time: datetime,
        status: SessionStatus = SessionStatus.SCHEDULED,
        location: Optional[str] = None
    ) -> Session:
        return await self.database.sessions.create(Session(
            id=generate_id("ses"),
            client_id=client_id,
            rbt_id=rbt_id,
            start_time=start_time,
            end_time=start_time + timedelta(hours=3),
            status=status,
            location=location,
            created_at=min(start_time, NOW),
            updated_at=min(start_time, NOW),
        ))

    async def add_history(self, client_id: str, rbt_id: str, days_ago: List[int]) -> List[Session]:
        """Completed sessions starting at 09:00 the given number of days before NOW"""
        sessions = []
        for days in days_ago:
            start = datetime.combine((NOW - timedelta(days=days)).date(), time(9, 0))
            sessions.append(await self.add_session(client_id, rbt_id, start, SessionStatus.COMPLETED))
        return sessions


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def settings(tmp_path):
    return Settings(use_redis=False, log_dir=str(tmp_path / "logs"), database_url="memory://")


@pytest.fixture
def database():
    return InMemoryDatabase()


@pytest.fixture
def world(database):
    return ScheduleWorld(database)


@pytest.fixture
def services(database, clock, settings):
    return SchedulingServices.build(
        database,
        clock=clock,
        settings=settings,
        cache_manager=CacheManager(settings),
    )
