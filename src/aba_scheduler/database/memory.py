"""
In-process stores with transactional staging and per-key locks
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..models import Caregiver, EntityType, EventQuery, ScheduleEvent, Session, Team
from ..utils.exceptions import ConflictError, NotFoundError, SchedulerError, TransactionError
from .base import AuditLogStore, CaregiverDirectory, Database, SessionStore, TeamStore

logger = logging.getLogger(__name__)


class MemoryTransaction:
    """Writes staged until the owning transaction commits"""

    def __init__(self, lock_keys: List[str]):
        self.lock_keys = lock_keys
        self.sessions: Dict[str, Session] = {}
        self.teams: Dict[str, Team] = {}
        self.caregivers: Dict[str, Caregiver] = {}
        self.events: List[ScheduleEvent] = []
        self.closed = False

    def check_open(self):
        if self.closed:
            raise TransactionError("Transaction is no longer open", lock_keys=self.lock_keys)


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def _visible(self, tx: Optional[MemoryTransaction]) -> List[Session]:
        if tx is None or not tx.sessions:
            return list(self._sessions.values())
        merged = dict(self._sessions)
        merged.update(tx.sessions)
        return list(merged.values())

    async def find_by_id(self, session_id: str, tx: Optional[MemoryTransaction] = None) -> Optional[Session]:
        if tx is not None and session_id in tx.sessions:
            return tx.sessions[session_id]
        return self._sessions.get(session_id)

    async def find_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None,
        tx: Optional[MemoryTransaction] = None
    ) -> List[Session]:
        return sorted(
            (
                s for s in self._visible(tx)
                if start_date <= s.start_time < end_date
                and (client_id is None or s.client_id == client_id)
                and (rbt_id is None or s.rbt_id == rbt_id)
            ),
            key=lambda s: s.start_time
        )

    async def find_active_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        tx: Optional[MemoryTransaction] = None
    ) -> List[Session]:
        return sorted(
            (s for s in self._visible(tx) if s.is_active and s.overlaps(start_date, end_date)),
            key=lambda s: s.start_time
        )

    async def find_by_client_id(self, client_id: str, tx: Optional[MemoryTransaction] = None) -> List[Session]:
        return sorted((s for s in self._visible(tx) if s.client_id == client_id), key=lambda s: s.start_time)

    async def find_by_rbt_id(self, rbt_id: str, tx: Optional[MemoryTransaction] = None) -> List[Session]:
        return sorted((s for s in self._visible(tx) if s.rbt_id == rbt_id), key=lambda s: s.start_time)

    async def check_conflicts(
        self,
        client_id: str,
        rbt_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_session_id: Optional[str] = None,
        tx: Optional[MemoryTransaction] = None
    ) -> List[Session]:
        return sorted(
            (
                s for s in self._visible(tx)
                if s.is_active
                and s.id != exclude_session_id
                and (s.client_id == client_id or s.rbt_id == rbt_id)
                and s.overlaps(start_time, end_time)
            ),
            key=lambda s: s.start_time
        )

    async def count_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None,
        tx: Optional[MemoryTransaction] = None
    ) -> int:
        return len(await self.find_by_date_range(start_date, end_date, client_id, rbt_id, tx=tx))

    async def _guard_double_booking(self, session: Session, tx: Optional[MemoryTransaction]):
        if not session.is_active:
            return
        clashes = await self.check_conflicts(
            session.client_id, session.rbt_id, session.start_time, session.end_time,
            exclude_session_id=session.id, tx=tx
        )
        if clashes:
            raise ConflictError(
                f"Session {session.id} overlaps active sessions of the same client or caregiver",
                session_id=session.id,
                conflicting_session_ids=[s.id for s in clashes]
            )

    def _write(self, session: Session, tx: Optional[MemoryTransaction]):
        if tx is None:
            self._sessions[session.id] = session
        else:
            tx.check_open()
            tx.sessions[session.id] = session

    async def create(self, session: Session, tx: Optional[MemoryTransaction] = None) -> Session:
        if await self.find_by_id(session.id, tx=tx) is not None:
            raise ConflictError(f"Session {session.id} already exists", session_id=session.id)
        await self._guard_double_booking(session, tx)
        self._write(session, tx)
        return session

    async def update(self, session: Session, tx: Optional[MemoryTransaction] = None) -> Session:
        if await self.find_by_id(session.id, tx=tx) is None:
            raise NotFoundError(f"Session {session.id} not found", entity_type="session", entity_id=session.id)
        await self._guard_double_booking(session, tx)
        self._write(session, tx)
        return session

    def _commit(self, tx: MemoryTransaction):
        self._sessions.update(tx.sessions)


class InMemoryTeamStore(TeamStore):

    def __init__(self):
        self._teams: Dict[str, Team] = {}

    def _visible(self, tx: Optional[MemoryTransaction]) -> List[Team]:
        merged = dict(self._teams)
        if tx is not None:
            merged.update(tx.teams)
        return list(merged.values())

    async def find_by_id(self, team_id: str, tx: Optional[MemoryTransaction] = None) -> Optional[Team]:
        if tx is not None and team_id in tx.teams:
            return tx.teams[team_id]
        return self._teams.get(team_id)

    async def find_by_rbt_id(
        self,
        rbt_id: str,
        active_only: bool = True,
        tx: Optional[MemoryTransaction] = None
    ) -> List[Team]:
        return [
            t for t in self._visible(tx)
            if rbt_id in t.rbt_ids and (t.is_active or not active_only)
        ]

    async def find_active_team_for_client(
        self,
        client_id: str,
        at: Optional[datetime] = None,
        tx: Optional[MemoryTransaction] = None
    ) -> Optional[Team]:
        for team in self._visible(tx):
            if team.client_id != client_id:
                continue
            if (at is None and team.is_active) or (at is not None and team.is_active_on(at)):
                return team
        return None

    async def create(self, team: Team, tx: Optional[MemoryTransaction] = None) -> Team:
        if tx is None:
            self._teams[team.id] = team
        else:
            tx.check_open()
            tx.teams[team.id] = team
        return team

    def _commit(self, tx: MemoryTransaction):
        self._teams.update(tx.teams)


class InMemoryAuditLogStore(AuditLogStore):

    def __init__(self):
        self._events: List[ScheduleEvent] = []

    async def record(self, event: ScheduleEvent, tx: Optional[MemoryTransaction] = None) -> ScheduleEvent:
        if tx is None:
            self._events.append(event)
        else:
            tx.check_open()
            tx.events.append(event)
        return event

    async def query(self, query: EventQuery, tx: Optional[MemoryTransaction] = None) -> List[ScheduleEvent]:
        events = self._events + (tx.events if tx is not None else [])
        # sorted() is stable, so ties keep insertion order
        return sorted((e for e in events if query.matches(e)), key=lambda e: e.created_at)

    async def get_audit_trail(
        self,
        entity_type: EntityType,
        entity_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ScheduleEvent]:
        query = EventQuery(start_date=start_date, end_date=end_date)
        if entity_type == EntityType.SESSION:
            query.session_id = entity_id
        elif entity_type == EntityType.RBT:
            query.rbt_id = entity_id
        else:
            query.client_id = entity_id
        return await self.query(query)

    def _commit(self, tx: MemoryTransaction):
        self._events.extend(tx.events)


class InMemoryCaregiverDirectory(CaregiverDirectory):

    def __init__(self):
        self._caregivers: Dict[str, Caregiver] = {}

    async def find_by_id(self, rbt_id: str, tx: Optional[MemoryTransaction] = None) -> Optional[Caregiver]:
        if tx is not None and rbt_id in tx.caregivers:
            return tx.caregivers[rbt_id]
        return self._caregivers.get(rbt_id)

    async def upsert(self, caregiver: Caregiver, tx: Optional[MemoryTransaction] = None) -> Caregiver:
        if tx is None:
            self._caregivers[caregiver.id] = caregiver
        else:
            tx.check_open()
            tx.caregivers[caregiver.id] = caregiver
        return caregiver

    def _commit(self, tx: MemoryTransaction):
        self._caregivers.update(tx.caregivers)


class InMemoryDatabase(Database):
    """Database kept entirely in process memory"""

    def __init__(self):
        self.sessions = InMemorySessionStore()
        self.teams = InMemoryTeamStore()
        self.audit_log = InMemoryAuditLogStore()
        self.caregivers = InMemoryCaregiverDirectory()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self.commit_count = 0
        self.rollback_count = 0
        logger.info("In-memory database initialized")

    def _claim_lock(self, key: str) -> asyncio.Lock:
        """Lock for a key, counted until the matching release"""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        return self._locks[key]

    def _release_claim(self, key: str):
        # Locks nobody holds or waits on are dropped
        self._lock_holders[key] -= 1
        if self._lock_holders[key] == 0:
            del self._lock_holders[key]
            del self._locks[key]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def transaction(self, lock_keys: Iterable[str] = ()):
        keys = sorted(set(lock_keys))
        claimed = []
        acquired = []
        tx = MemoryTransaction(keys)
        try:
            # Sorted acquisition keeps concurrent transactions from deadlocking
            for key in keys:
                lock = self._claim_lock(key)
                claimed.append(key)
                await lock.acquire()
                acquired.append(lock)

            try:
                yield tx
            except SchedulerError:
                self.rollback_count += 1
                raise
            except Exception as e:
                self.rollback_count += 1
                logger.error(f"Transaction on {keys} rolled back: {e}")
                raise TransactionError(
                    f"Transaction failed: {e}",
                    lock_keys=keys,
                    details={"original_exception": type(e).__name__}
                ) from e

            self.sessions._commit(tx)
            self.teams._commit(tx)
            self.caregivers._commit(tx)
            self.audit_log._commit(tx)
            self.commit_count += 1
        finally:
            tx.closed = True
            for lock in reversed(acquired):
                lock.release()
            for key in claimed:
                self._release_claim(key)

    async def health_check(self) -> bool:
        return True
