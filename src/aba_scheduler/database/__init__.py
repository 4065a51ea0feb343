"""Persistence layer for sessions, teams, caregivers and schedule events."""

from ..config import Settings
from ..utils.exceptions import ConfigurationError
from .base import (
    AuditLogStore,
    CaregiverDirectory,
    Database,
    SessionStore,
    TeamStore,
    client_lock_key,
    rbt_lock_key,
    session_lock_key,
)
from .memory import InMemoryDatabase


def create_database(settings: Settings) -> Database:
    """Build the database named by settings.database_url"""
    url = settings.database_url
    if url.startswith("memory://"):
        return InMemoryDatabase()
    if url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresDatabase

        return PostgresDatabase(
            url,
            min_size=settings.database_min_pool_size,
            max_size=settings.database_max_pool_size,
        )
    raise ConfigurationError(
        f"Unsupported database URL scheme: {url.split(':', 1)[0]}",
        config_key="database_url",
        expected_type="memory:// or postgresql:// URL",
        actual_value=url,
    )


__all__ = [
    "AuditLogStore",
    "CaregiverDirectory",
    "Database",
    "InMemoryDatabase",
    "SessionStore",
    "TeamStore",
    "client_lock_key",
    "create_database",
    "rbt_lock_key",
    "session_lock_key",
]
