"""PostgreSQL stores backed by an asyncpg connection pool."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Iterable, List, Optional

import asyncpg

from ..models import (
    Caregiver,
    EntityType,
    EventQuery,
    ScheduleEvent,
    ScheduleEventType,
    Session,
    SessionStatus,
    Team,
)
from ..utils.exceptions import ConflictError, NotFoundError, SchedulerError, TransactionError
from .base import AuditLogStore, CaregiverDirectory, Database, SessionStore, TeamStore

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [s.value for s in SessionStatus if s.is_active]

SCHEMA = """
CREATE EXTENSION IF NOT EXISTS btree_gist;

CREATE TABLE IF NOT EXISTS caregivers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    rbt_ids TEXT[] NOT NULL,
    primary_rbt_id TEXT NOT NULL,
    effective_date TIMESTAMP NOT NULL,
    end_date TIMESTAMP,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    rbt_id TEXT NOT NULL,
    start_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP NOT NULL,
    status TEXT NOT NULL,
    location TEXT,
    cancellation_reason TEXT,
    notes TEXT,
    created_by TEXT NOT NULL,
    updated_by TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    CHECK (end_time > start_time),
    EXCLUDE USING gist (rbt_id WITH =, tsrange(start_time, end_time) WITH &&)
        WHERE (status NOT IN ('cancelled', 'no_show')),
    EXCLUDE USING gist (client_id WITH =, tsrange(start_time, end_time) WITH &&)
        WHERE (status NOT IN ('cancelled', 'no_show'))
);

CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON sessions (start_time);

CREATE TABLE IF NOT EXISTS schedule_events (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT UNIQUE NOT NULL,
    event_type TEXT NOT NULL,
    session_id TEXT,
    client_id TEXT,
    rbt_id TEXT,
    old_values JSONB,
    new_values JSONB,
    reason TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_by TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_schedule_events_created_at ON schedule_events (created_at);
"""

SESSION_COLUMNS = (
    "id, client_id, rbt_id, start_time, end_time, status, location, cancellation_reason, "
    "notes, created_by, updated_by, created_at, updated_at"
)


def _loads(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def row_to_session(row) -> Session:
    return Session(
        id=row["id"],
        client_id=row["client_id"],
        rbt_id=row["rbt_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        status=SessionStatus(row["status"]),
        location=row["location"],
        cancellation_reason=row["cancellation_reason"],
        notes=row["notes"],
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def row_to_team(row) -> Team:
    return Team(
        id=row["id"],
        client_id=row["client_id"],
        rbt_ids=list(row["rbt_ids"]),
        primary_rbt_id=row["primary_rbt_id"],
        effective_date=row["effective_date"],
        end_date=row["end_date"],
        is_active=row["is_active"],
    )


def row_to_event(row) -> ScheduleEvent:
    return ScheduleEvent(
        id=row["id"],
        event_type=ScheduleEventType(row["event_type"]),
        session_id=row["session_id"],
        client_id=row["client_id"],
        rbt_id=row["rbt_id"],
        old_values=_loads(row["old_values"]),
        new_values=_loads(row["new_values"]),
        reason=row["reason"],
        metadata=_loads(row["metadata"]) or {},
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def session_to_args(session: Session) -> tuple:
    return (
        session.id,
        session.client_id,
        session.rbt_id,
        session.start_time,
        session.end_time,
        session.status.value,
        session.location,
        session.cancellation_reason,
        session.notes,
        session.created_by,
        session.updated_by,
        session.created_at,
        session.updated_at,
    )


class PostgresTransaction:
    """Connection bound to an open database transaction"""

    def __init__(self, connection: asyncpg.Connection, lock_keys: List[str]):
        self.connection = connection
        self.lock_keys = lock_keys


class _PostgresStore:

    def __init__(self, database: "PostgresDatabase"):
        self.database = database

    @asynccontextmanager
    async def _connection(self, tx: Optional[PostgresTransaction]):
        if tx is not None:
            yield tx.connection
        else:
            async with self.database.get_connection() as conn:
                yield conn


class PostgresSessionStore(_PostgresStore, SessionStore):

    async def find_by_id(self, session_id: str, tx: Optional[PostgresTransaction] = None) -> Optional[Session]:
        async with self._connection(tx) as conn:
            row = await conn.fetchrow(f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = $1", session_id)
        return row_to_session(row) if row else None

    async def find_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None,
        tx: Optional[PostgresTransaction] = None
    ) -> List[Session]:
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS} FROM sessions
                WHERE start_time >= $1 AND start_time < $2
                  AND ($3::text IS NULL OR client_id = $3)
                  AND ($4::text IS NULL OR rbt_id = $4)
                ORDER BY start_time
                """,
                start_date, end_date, client_id, rbt_id
            )
        return [row_to_session(row) for row in rows]

    async def find_active_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        tx: Optional[PostgresTransaction] = None
    ) -> List[Session]:
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS} FROM sessions
                WHERE start_time < $2 AND end_time > $1 AND status = ANY($3::text[])
                ORDER BY start_time
                """,
                start_date, end_date, ACTIVE_STATUSES
            )
        return [row_to_session(row) for row in rows]

    async def find_by_client_id(self, client_id: str, tx: Optional[PostgresTransaction] = None) -> List[Session]:
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"SELECT {SESSION_COLUMNS} FROM sessions WHERE client_id = $1 ORDER BY start_time", client_id
            )
        return [row_to_session(row) for row in rows]

    async def find_by_rbt_id(self, rbt_id: str, tx: Optional[PostgresTransaction] = None) -> List[Session]:
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"SELECT {SESSION_COLUMNS} FROM sessions WHERE rbt_id = $1 ORDER BY start_time", rbt_id
            )
        return [row_to_session(row) for row in rows]

    async def check_conflicts(
        self,
        client_id: str,
        rbt_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_session_id: Optional[str] = None,
        tx: Optional[PostgresTransaction] = None
    ) -> List[Session]:
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS} FROM sessions
                WHERE (client_id = $1 OR rbt_id = $2)
                  AND start_time < $4 AND end_time > $3
                  AND status = ANY($5::text[])
                  AND ($6::text IS NULL OR id <> $6)
                ORDER BY start_time
                """,
                client_id, rbt_id, start_time, end_time, ACTIVE_STATUSES, exclude_session_id
            )
        return [row_to_session(row) for row in rows]

    async def count_by_date_range(
        self,
        start_date: datetime,
        end_date: datetime,
        client_id: Optional[str] = None,
        rbt_id: Optional[str] = None,
        tx: Optional[PostgresTransaction] = None
    ) -> int:
        async with self._connection(tx) as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM sessions
                WHERE start_time >= $1 AND start_time < $2
                  AND ($3::text IS NULL OR client_id = $3)
                  AND ($4::text IS NULL OR rbt_id = $4)
                """,
                start_date, end_date, client_id, rbt_id
            )

    async def create(self, session: Session, tx: Optional[PostgresTransaction] = None) -> Session:
        async with self._connection(tx) as conn:
            try:
                await conn.execute(
                    f"INSERT INTO sessions ({SESSION_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                    *session_to_args(session)
                )
            except (asyncpg.exceptions.ExclusionViolationError, asyncpg.exceptions.UniqueViolationError) as e:
                raise ConflictError(
                    f"Session {session.id} conflicts with an existing session: {e}",
                    session_id=session.id
                ) from e
        return session

    async def update(self, session: Session, tx: Optional[PostgresTransaction] = None) -> Session:
        async with self._connection(tx) as conn:
            try:
                result = await conn.execute(
                    """
                    UPDATE sessions SET client_id = $2, rbt_id = $3, start_time = $4, end_time = $5,
                        status = $6, location = $7, cancellation_reason = $8, notes = $9,
                        created_by = $10, updated_by = $11, created_at = $12, updated_at = $13
                    WHERE id = $1
                    """,
                    *session_to_args(session)
                )
            except asyncpg.exceptions.ExclusionViolationError as e:
                raise ConflictError(
                    f"Session {session.id} conflicts with an existing session: {e}",
                    session_id=session.id
                ) from e
        if result.endswith(" 0"):
            raise NotFoundError(f"Session {session.id} not found", entity_type="session", entity_id=session.id)
        return session


class PostgresTeamStore(_PostgresStore, TeamStore):

    TEAM_COLUMNS = "id, client_id, rbt_ids, primary_rbt_id, effective_date, end_date, is_active"

    async def find_by_id(self, team_id: str, tx: Optional[PostgresTransaction] = None) -> Optional[Team]:
        async with self._connection(tx) as conn:
            row = await conn.fetchrow(f"SELECT {self.TEAM_COLUMNS} FROM teams WHERE id = $1", team_id)
        return row_to_team(row) if row else None

    async def find_by_rbt_id(
        self,
        rbt_id: str,
        active_only: bool = True,
        tx: Optional[PostgresTransaction] = None
    ) -> List[Team]:
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {self.TEAM_COLUMNS} FROM teams
                WHERE $1 = ANY(rbt_ids) AND (NOT $2 OR is_active)
                ORDER BY effective_date, id
                """,
                rbt_id, active_only
            )
        return [row_to_team(row) for row in rows]

    async def find_active_team_for_client(
        self,
        client_id: str,
        at: Optional[datetime] = None,
        tx: Optional[PostgresTransaction] = None
    ) -> Optional[Team]:
        async with self._connection(tx) as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {self.TEAM_COLUMNS} FROM teams
                WHERE client_id = $1 AND is_active
                  AND ($2::timestamp IS NULL OR (effective_date <= $2 AND (end_date IS NULL OR end_date >= $2)))
                ORDER BY effective_date DESC
                LIMIT 1
                """,
                client_id, at
            )
        return row_to_team(row) if row else None

    async def create(self, team: Team, tx: Optional[PostgresTransaction] = None) -> Team:
        async with self._connection(tx) as conn:
            await conn.execute(
                f"INSERT INTO teams ({self.TEAM_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                team.id, team.client_id, team.rbt_ids, team.primary_rbt_id,
                team.effective_date, team.end_date, team.is_active
            )
        return team


class PostgresAuditLogStore(_PostgresStore, AuditLogStore):

    EVENT_COLUMNS = (
        "id, event_type, session_id, client_id, rbt_id, old_values, new_values, "
        "reason, metadata, created_by, created_at"
    )

    async def record(self, event: ScheduleEvent, tx: Optional[PostgresTransaction] = None) -> ScheduleEvent:
        async with self._connection(tx) as conn:
            await conn.execute(
                f"INSERT INTO schedule_events ({self.EVENT_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9::jsonb, $10, $11)",
                event.id,
                event.event_type.value,
                event.session_id,
                event.client_id,
                event.rbt_id,
                json.dumps(event.old_values) if event.old_values is not None else None,
                json.dumps(event.new_values) if event.new_values is not None else None,
                event.reason,
                json.dumps(event.metadata),
                event.created_by,
                event.created_at,
            )
        return event

    async def query(self, query: EventQuery, tx: Optional[PostgresTransaction] = None) -> List[ScheduleEvent]:
        event_types = [t.value for t in query.event_types] if query.event_types is not None else None
        async with self._connection(tx) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {self.EVENT_COLUMNS} FROM schedule_events
                WHERE ($1::text[] IS NULL OR event_type = ANY($1::text[]))
                  AND ($2::text IS NULL OR session_id = $2)
                  AND ($3::text IS NULL OR client_id = $3)
                  AND ($4::text IS NULL OR rbt_id = $4)
                  AND ($5::timestamp IS NULL OR created_at >= $5)
                  AND ($6::timestamp IS NULL OR created_at <= $6)
                ORDER BY created_at, seq
                """,
                event_types, query.session_id, query.client_id, query.rbt_id,
                query.start_date, query.end_date
            )
        return [row_to_event(row) for row in rows]

    async def get_audit_trail(
        self,
        entity_type: EntityType,
        entity_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ScheduleEvent]:
        field = {
            EntityType.SESSION: "session_id",
            EntityType.RBT: "rbt_id",
            EntityType.CLIENT: "client_id",
        }[entity_type]
        return await self.query(EventQuery(**{field: entity_id, "start_date": start_date, "end_date": end_date}))


class PostgresCaregiverDirectory(_PostgresStore, CaregiverDirectory):

    async def find_by_id(self, rbt_id: str, tx: Optional[PostgresTransaction] = None) -> Optional[Caregiver]:
        async with self._connection(tx) as conn:
            row = await conn.fetchrow("SELECT id, name, email, is_active FROM caregivers WHERE id = $1", rbt_id)
        return Caregiver(**dict(row)) if row else None

    async def upsert(self, caregiver: Caregiver, tx: Optional[PostgresTransaction] = None) -> Caregiver:
        async with self._connection(tx) as conn:
            await conn.execute(
                """
                INSERT INTO caregivers (id, name, email, is_active) VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET name = $2, email = $3, is_active = $4
                """,
                caregiver.id, caregiver.name, caregiver.email, caregiver.is_active
            )
        return caregiver


class PostgresDatabase(Database):
    """Manages the PostgreSQL connection pool and the stores built on it."""

    def __init__(self, database_url: str, min_size: int = 5, max_size: int = 20):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: asyncpg.Pool | None = None
        self._initialized = False
        self.sessions = PostgresSessionStore(self)
        self.teams = PostgresTeamStore(self)
        self.audit_log = PostgresAuditLogStore(self)
        self.caregivers = PostgresCaregiverDirectory(self)

    async def initialize(self, create_schema: bool = True):
        """Initialize database connection pool."""
        if self._initialized:
            logger.warning("Database already initialized")
            return

        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                server_settings={
                    'application_name': 'aba-session-scheduler'
                }
            )

            async with self.pool.acquire() as conn:
                await conn.fetchval('SELECT 1')
                if create_schema:
                    await conn.execute(SCHEMA)

            self._initialized = True
            logger.info("PostgreSQL connection pool initialized")

        except Exception as e:
            logger.error(f"Failed to initialize database pool: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self._initialized = False
            logger.info("PostgreSQL connection pool closed")

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self._initialized or not self.pool:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self, lock_keys: Iterable[str] = ()):
        keys = sorted(set(lock_keys))
        async with self.get_connection() as conn:
            try:
                async with conn.transaction():
                    for key in keys:
                        await conn.execute("SELECT pg_advisory_xact_lock(hashtextextended($1, 0))", key)
                    yield PostgresTransaction(conn, keys)
            except SchedulerError:
                raise
            except asyncpg.exceptions.ExclusionViolationError as e:
                raise ConflictError(f"Transaction on {keys} would double-book: {e}") from e
            except Exception as e:
                logger.error(f"Transaction on {keys} rolled back: {e}")
                raise TransactionError(
                    f"Transaction failed: {e}",
                    lock_keys=keys,
                    details={"original_exception": type(e).__name__}
                ) from e

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.get_connection() as conn:
                result = await conn.fetchval('SELECT 1')
                return result == 1
        except (asyncpg.PostgresError, OSError, RuntimeError):
            return False
