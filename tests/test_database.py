"""Tests for the SQLite backend: dialect rewriting and store constraints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from expert_connect.core.database import _dt_str, _param, to_sqlite
from expert_connect.core.database_pg import _rowcount
from expert_connect.core.errors import StoreError, UniqueViolation
from expert_connect.core.models import RequestStatus


class TestToSqlite:
    def test_placeholders(self):
        assert to_sqlite("SELECT * FROM t WHERE a = $1 AND b = $12") == "SELECT * FROM t WHERE a = ?1 AND b = ?12"

    def test_strips_skip_locked(self):
        sql = "SELECT id FROM q WHERE status = 'queued' LIMIT 1 FOR UPDATE SKIP LOCKED"
        assert to_sqlite(sql) == "SELECT id FROM q WHERE status = 'queued' LIMIT 1"

    def test_strips_plain_for_update(self):
        assert to_sqlite("SELECT * FROM q WHERE id = $1 FOR UPDATE") == "SELECT * FROM q WHERE id = ?1"

    def test_strips_casts(self):
        assert to_sqlite("SELECT $1::timestamptz, $2::int") == "SELECT ?1, ?2"


class TestParam:
    def test_datetime_is_fixed_width_utc(self):
        dt = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)
        assert _param(dt) == "2026-01-05T12:00:00.000000+00:00"

    def test_text_order_matches_time_order(self):
        a = datetime(2026, 1, 5, 9, 59, 59, 999999, tzinfo=timezone.utc)
        b = a + timedelta(microseconds=1)
        assert _dt_str(a) < _dt_str(b)

    def test_other_offsets_normalized(self):
        dt = datetime(2026, 1, 5, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert _dt_str(dt) == "2026-01-05T12:00:00.000000+00:00"

    def test_enum_and_bool(self):
        assert _param(RequestStatus.OFFERED) == "offered"
        assert _param(True) == 1
        assert _param(5) == 5


class TestRowcount:
    def test_command_tags(self):
        assert _rowcount("UPDATE 3") == 3
        assert _rowcount("INSERT 0 1") == 1
        assert _rowcount("BEGIN") == 0


class TestStoreConstraints:
    async def test_one_active_request_per_client(self, db, add_user, clock):
        await add_user(1)
        insert = (
            "INSERT INTO connection_requests (client_id, status, created_at, updated_at) "
            "VALUES ($1, 'queued', $2, $2)"
        )
        async with db.transaction() as tx:
            await tx.execute(insert, 1, clock())
        with pytest.raises(UniqueViolation):
            async with db.transaction() as tx:
                await tx.execute(insert, 1, clock())

    async def test_terminal_requests_do_not_block_new_ones(self, db, add_user, clock):
        await add_user(1)
        async with db.transaction() as tx:
            await tx.execute(
                "INSERT INTO connection_requests (client_id, status, created_at, updated_at) "
                "VALUES ($1, 'cancelled', $2, $2)",
                1, clock(),
            )
            await tx.execute(
                "INSERT INTO connection_requests (client_id, status, created_at, updated_at) "
                "VALUES ($1, 'queued', $2, $2)",
                1, clock(),
            )
            count = await tx.fetchval("SELECT COUNT(*) FROM connection_requests WHERE client_id = $1", 1)
        assert count == 2

    async def test_load_cannot_exceed_capacity(self, db, add_user, clock):
        await add_user(5, role="expert")
        with pytest.raises(StoreError):
            async with db.transaction() as tx:
                await tx.execute(
                    "INSERT INTO expert_availability (expert_id, is_online, max_concurrent_clients, "
                    "current_active_clients, created_at, updated_at) VALUES ($1, TRUE, 1, 2, $2, $2)",
                    5, clock(),
                )

    async def test_offered_requires_expiry(self, db, add_user, clock):
        await add_user(1)
        await add_user(5, role="expert")
        with pytest.raises(StoreError):
            async with db.transaction() as tx:
                await tx.execute(
                    "INSERT INTO connection_requests (client_id, expert_id, status, created_at, updated_at) "
                    "VALUES ($1, $2, 'offered', $3, $3)",
                    1, 5, clock(),
                )

    async def test_failed_transaction_rolls_back(self, db, add_user, clock):
        await add_user(1)
        with pytest.raises(RuntimeError):
            async with db.transaction() as tx:
                await tx.execute(
                    "INSERT INTO connection_requests (client_id, status, created_at, updated_at) "
                    "VALUES ($1, 'queued', $2, $2)",
                    1, clock(),
                )
                raise RuntimeError("boom")
        async with db.transaction(readonly=True) as tx:
            assert await tx.fetchval("SELECT COUNT(*) FROM connection_requests") == 0
