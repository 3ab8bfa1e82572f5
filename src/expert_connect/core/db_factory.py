"""Database factory - selects backend based on configuration."""

from __future__ import annotations

from expert_connect.core.config import Settings


def create_database(settings: Settings | None = None):
    """Return the appropriate database backend.

    - use_sqlite=True uses the aiosqlite backend.
    - Otherwise uses the asyncpg PostgreSQL backend (default for production).
    """
    s = settings or Settings()
    if s.use_sqlite:
        from expert_connect.core.database import Database
        return Database(s)
    else:
        from expert_connect.core.database_pg import PostgresDatabase
        return PostgresDatabase(s)


def create_wake_channel(db, settings: Settings | None = None):
    """Return the wake channel matching the database backend."""
    s = settings or Settings()
    if getattr(db, "dialect", None) == "postgres":
        from expert_connect.wake import PostgresWakeChannel
        return PostgresWakeChannel(db, s.wake_channel)
    from expert_connect.wake import LocalWakeChannel
    return LocalWakeChannel()
