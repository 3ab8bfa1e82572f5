"""Database connection and transactions - PostgreSQL backend (asyncpg).

Production backend using an asyncpg connection pool. Row locks taken with
``FOR UPDATE SKIP LOCKED`` inside these transactions are what let several
dispatcher workers run concurrently against the same queue.
"""

from __future__ import annotations

import enum
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from expert_connect.core.config import Settings
from expert_connect.core.errors import StoreError, UniqueViolation


def _param(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    return dict(row)


def _rowcount(status: str) -> int:
    """Parse the affected-row count from a command tag like ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresTransaction:
    """Query interface bound to one open PostgreSQL transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def fetch(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        rows = await self._conn.fetch(sql, *[_param(a) for a in args])
        return [_row_to_dict(r) for r in rows]

    async def fetchrow(self, sql: str, *args: Any) -> dict[str, Any] | None:
        row = await self._conn.fetchrow(sql, *[_param(a) for a in args])
        return _row_to_dict(row) if row else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        return await self._conn.fetchval(sql, *[_param(a) for a in args])

    async def execute(self, sql: str, *args: Any) -> int:
        """Run a statement and return the number of affected rows."""
        status = await self._conn.execute(sql, *[_param(a) for a in args])
        return _rowcount(status)


class PostgresDatabase:
    """Async PostgreSQL connection pool manager."""

    dialect = "postgres"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.settings.database_url, min_size=2, max_size=10,
            server_settings={"search_path": "expert_connect, public"},
        )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def transaction(self, readonly: bool = False) -> AsyncIterator[PostgresTransaction]:
        """Run a block atomically; any exception rolls the whole block back."""
        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction(readonly=readonly):
                    yield PostgresTransaction(conn)
            except asyncpg.UniqueViolationError as e:
                raise UniqueViolation(str(e)) from e
            except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                raise StoreError(str(e)) from e
