"""Apply the PostgreSQL migrations for the expert connect schema.

The SQLite backend creates its schema on connect and needs no migration.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import asyncpg

from expert_connect.core.config import Settings

MIGRATIONS_DIR = Path(__file__).parent.parent.parent.parent / "migrations"


async def ensure_database(settings: Settings) -> None:
    """Create the target database if the server does not have it yet."""
    base_url, db_name = settings.database_url.rsplit("/", 1)
    try:
        conn = await asyncpg.connect(f"{base_url}/postgres")
    except (OSError, asyncpg.PostgresError) as e:
        print(f"Note: could not reach maintenance database ({e}); assuming {db_name} exists")
        return
    try:
        exists = await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", db_name)
        if not exists:
            await conn.execute(f'CREATE DATABASE "{db_name}"')
            print(f"Created database: {db_name}")
    finally:
        await conn.close()


async def run_migrations(settings: Settings | None = None) -> list[str]:
    s = settings or Settings()
    if s.use_sqlite:
        print("USE_SQLITE is set; the SQLite schema is created on connect.")
        return []

    files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if not files:
        print(f"No migration files found in {MIGRATIONS_DIR}")
        return []

    await ensure_database(s)
    conn = await asyncpg.connect(s.database_url)
    applied = []
    try:
        for path in files:
            async with conn.transaction():
                await conn.execute(path.read_text(encoding="utf-8"))
            applied.append(path.name)
            print(f"Applied {path.name}")
    finally:
        await conn.close()
    return applied


def main() -> None:
    asyncio.run(run_migrations())


if __name__ == "__main__":
    main()
