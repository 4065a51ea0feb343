"""
Abstract interfaces for session, team, audit and caregiver persistence
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Iterable, List, Optional

from ..models import Caregiver, EntityType, EventQuery, ScheduleEvent, Session, Team


def client_lock_key(client_id: str) -> str:
    return f"client:{client_id}"


def rbt_lock_key(rbt_id: str) -> str:
    return f"rbt:{rbt_id}"


def session_lock_key(session_id: str) -> str:
    return f"session:{session_id}"


class SessionStore(ABC):
    """Persistence for therapy sessions. Every method accepts an optional transaction handle."""

    @abstractmethod
    async def find_by_id(self, session_id: str, tx: Any = None) -> Optional[Session]:
        pass

    @abstractmethod
    async def find_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None,
        tx: Any = None
    ) -> List[Session]:
        """Sessions of any status starting in [start_date, end_date), ordered by start time"""
        pass

    @abstractmethod
    async def find_active_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        tx: Any = None
    ) -> List[Session]:
        """Active sessions overlapping [start_date, end_date), ordered by start time"""
        pass

    @abstractmethod
    async def find_by_client_id(self, client_id: str, tx: Any = None) -> List[Session]:
        pass

    @abstractmethod
    async def find_by_rbt_id(self, rbt_id: str, tx: Any = None) -> List[Session]:
        pass

    @abstractmethod
    async def check_conflicts(
        self,
        client_id: str,
        rbt_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_session_id: Optional[str] = None,
        tx: Any = None
    ) -> List[Session]:
        """Active sessions of the client or the caregiver overlapping the window"""
        pass

    @abstractmethod
    async def count_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None,
        tx: Any = None
    ) -> int:
        pass

    @abstractmethod
    async def create(self, session: Session, tx: Any = None) -> Session:
        """Insert a session; raises ConflictError if it would double-book"""
        pass

    @abstractmethod
    async def update(self, session: Session, tx: Any = None) -> Session:
        """Replace a stored session; raises NotFoundError or ConflictError"""
        pass


class TeamStore(ABC):
    """Persistence for client teams"""

    @abstractmethod
    async def find_by_id(self, team_id: str, tx: Any = None) -> Optional[Team]:
        pass

    @abstractmethod
    async def find_by_rbt_id(self, rbt_id: str, active_only: bool = True, tx: Any = None) -> List[Team]:
        pass

    @abstractmethod
    async def find_active_team_for_client(
        self,
        client_id: str,
        at: Optional[datetime] = None,
        tx: Any = None
    ) -> Optional[Team]:
        pass

    @abstractmethod
    async def create(self, team: Team, tx: Any = None) -> Team:
        pass


class AuditLogStore(ABC):
    """Append-only log of schedule events"""

    @abstractmethod
    async def record(self, event: ScheduleEvent, tx: Any = None) -> ScheduleEvent:
        pass

    @abstractmethod
    async def query(self, query: EventQuery, tx: Any = None) -> List[ScheduleEvent]:
        """Matching events ordered by creation time, insertion order on ties"""
        pass

    @abstractmethod
    async def get_audit_trail(
        self,
        entity_type: EntityType,
        entity_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ScheduleEvent]:
        pass


class CaregiverDirectory(ABC):
    """Lookup of caregivers and their active flag"""

    @abstractmethod
    async def find_by_id(self, rbt_id: str, tx: Any = None) -> Optional[Caregiver]:
        pass

    @abstractmethod
    async def upsert(self, caregiver: Caregiver, tx: Any = None) -> Caregiver:
        pass

    async def is_active(self, rbt_id: str, tx: Any = None) -> bool:
        caregiver = await self.find_by_id(rbt_id, tx=tx)
        return caregiver is not None and caregiver.is_active


class Database(ABC):
    """Bundle of stores sharing one transaction mechanism"""

    sessions: SessionStore
    teams: TeamStore
    audit_log: AuditLogStore
    caregivers: CaregiverDirectory

    @abstractmethod
    def transaction(self, lock_keys: Iterable[str] = ()) -> AbstractAsyncContextManager[Any]:
        """
        Open a transaction holding the given lock keys until it ends.

        Writes made with the yielded handle become visible to other callers
        only on commit. Any exception inside the block rolls every write back;
        non-scheduler exceptions are re-raised as TransactionError.
        """
        pass

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True
