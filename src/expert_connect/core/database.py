"""Database connection and transactions - SQLite backend.

Zero-install backend using aiosqlite, used for local development and tests.
Auto-creates the schema on connect.

SQL in this package is written once, in the PostgreSQL dialect with ``$n``
placeholders. SQLite has no row locks: a single connection runs every
transaction under an asyncio lock with ``BEGIN IMMEDIATE``, so writers are
serialized and the ``FOR UPDATE [SKIP LOCKED]`` clauses are simply dropped.
"""

from __future__ import annotations

import asyncio
import enum
import re
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import aiosqlite

from expert_connect.core.config import Settings
from expert_connect.core.errors import StoreError, UniqueViolation


# ---------------------------------------------------------------------------
# SQLite schema (auto-created on first connect)
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id                  INTEGER PRIMARY KEY,
    role                TEXT,
    display_name        TEXT,
    email               TEXT,
    created_at          TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);

CREATE TABLE IF NOT EXISTS expert_availability (
    expert_id               INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    is_online               INTEGER NOT NULL DEFAULT 1,
    max_concurrent_clients  INTEGER NOT NULL DEFAULT 1,
    current_active_clients  INTEGER NOT NULL DEFAULT 0,
    last_assigned_at        TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL,
    CHECK (max_concurrent_clients >= 1),
    CHECK (current_active_clients >= 0),
    CHECK (current_active_clients <= max_concurrent_clients)
);

CREATE TABLE IF NOT EXISTS connection_requests (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id               INTEGER NOT NULL REFERENCES users(id),
    expert_id               INTEGER REFERENCES users(id),
    status                  TEXT NOT NULL DEFAULT 'queued',
    position                INTEGER,
    estimated_wait_seconds  INTEGER,
    offered_at              TEXT,
    offer_expires_at        TEXT,
    assigned_at             TEXT,
    connected_at            TEXT,
    completed_at            TEXT,
    cancelled_at            TEXT,
    timed_out_at            TEXT,
    rejected_at             TEXT,
    rejected_reason         TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL,
    CHECK (status IN ('queued', 'offered', 'assigned', 'connected',
                      'cancelled', 'timed_out', 'completed')),
    CHECK (status <> 'queued' OR expert_id IS NULL),
    CHECK (status NOT IN ('offered', 'assigned', 'connected') OR expert_id IS NOT NULL),
    CHECK ((status = 'offered') = (offer_expires_at IS NOT NULL))
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_requests_one_active_per_client
    ON connection_requests(client_id)
    WHERE status IN ('queued', 'offered', 'assigned', 'connected');
CREATE INDEX IF NOT EXISTS idx_requests_queue ON connection_requests(status, created_at, id);
CREATE INDEX IF NOT EXISTS idx_requests_expert ON connection_requests(expert_id, status);
CREATE INDEX IF NOT EXISTS idx_requests_offer_expiry ON connection_requests(offer_expires_at);
CREATE INDEX IF NOT EXISTS idx_requests_rejected ON connection_requests(rejected_at);
"""


# ---------------------------------------------------------------------------
# Dialect helpers
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\$(\d+)")
_LOCKING = re.compile(r"\s+FOR\s+UPDATE(\s+OF\s+\w+)?(\s+SKIP\s+LOCKED|\s+NOWAIT)?", re.IGNORECASE)
_CAST = re.compile(r"::[a-z_]+", re.IGNORECASE)


def _dt_str(dt: datetime) -> str:
    """Fixed-width UTC text so lexical order equals time order."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _param(value: Any) -> Any:
    if isinstance(value, datetime):
        return _dt_str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def to_sqlite(sql: str) -> str:
    """Rewrite package SQL for SQLite: ``?n`` placeholders, no locks, no casts."""
    sql = _LOCKING.sub("", sql)
    sql = _CAST.sub("", sql)
    return _PLACEHOLDER.sub(r"?\1", sql)


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    """Convert sqlite3.Row to a plain dict."""
    return {k: row[k] for k in row.keys()}


class SqliteTransaction:
    """Query interface bound to one open SQLite transaction."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def fetch(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        async with self._conn.execute(to_sqlite(sql), [_param(a) for a in args]) as cur:
            rows = await cur.fetchall()
        return [_row_to_dict(r) for r in rows]

    async def fetchrow(self, sql: str, *args: Any) -> dict[str, Any] | None:
        rows = await self.fetch(sql, *args)
        return rows[0] if rows else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        row = await self.fetchrow(sql, *args)
        if row is None:
            return None
        return next(iter(row.values()))

    async def execute(self, sql: str, *args: Any) -> int:
        """Run a statement and return the number of affected rows."""
        async with self._conn.execute(to_sqlite(sql), [_param(a) for a in args]) as cur:
            return cur.rowcount


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------


class Database:
    """Async SQLite connection manager."""

    dialect = "sqlite"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    def _resolve_path(self) -> str:
        url = self.settings.database_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):]
        if url.startswith("sqlite://"):
            return url[len("sqlite://"):]
        return url

    async def connect(self) -> None:
        path = self._resolve_path()
        # Autocommit mode: transactions are opened explicitly below.
        self._conn = await aiosqlite.connect(path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._init_schema()

    async def _init_schema(self) -> None:
        """Auto-create tables if they don't exist."""
        await self.conn.executescript(SCHEMA_SQL)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self, readonly: bool = False) -> AsyncIterator[SqliteTransaction]:
        """Run a block atomically; any exception rolls the whole block back."""
        async with self._lock:
            conn = self.conn
            await conn.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
            try:
                yield SqliteTransaction(conn)
            except sqlite3.IntegrityError as e:
                await conn.execute("ROLLBACK")
                if "UNIQUE" in str(e):
                    raise UniqueViolation(str(e)) from e
                raise StoreError(str(e)) from e
            except sqlite3.Error as e:
                await conn.execute("ROLLBACK")
                raise StoreError(str(e)) from e
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
