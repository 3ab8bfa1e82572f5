"""Tests for the in-process wake channel and backend selection."""

from __future__ import annotations

import logging

from expert_connect.core.config import Settings
from expert_connect.core.db_factory import create_database, create_wake_channel
from expert_connect.wake import LocalWakeChannel, PostgresWakeChannel


class TestLocalWakeChannel:
    async def test_publish_calls_handlers(self):
        wake = LocalWakeChannel()
        calls = []
        await wake.subscribe(lambda: calls.append("a"))
        await wake.publish()
        await wake.publish()
        assert calls == ["a", "a"]

    async def test_unsubscribe(self):
        wake = LocalWakeChannel()
        calls = []

        def handler():
            calls.append(1)

        await wake.subscribe(handler)
        await wake.unsubscribe(handler)
        await wake.publish()
        assert calls == []

    async def test_handler_failure_is_logged_not_raised(self, caplog):
        wake = LocalWakeChannel()
        calls = []

        def broken():
            raise RuntimeError("nope")

        await wake.subscribe(broken)
        await wake.subscribe(lambda: calls.append(1))
        with caplog.at_level(logging.ERROR, logger="expert_connect.wake"):
            await wake.publish()
        assert calls == [1]
        assert "Wake handler failed" in caplog.text


class TestFactory:
    def test_sqlite_gets_local_channel(self):
        s = Settings(use_sqlite=True, sqlite_path=":memory:")
        db = create_database(s)
        assert db.dialect == "sqlite"
        assert isinstance(create_wake_channel(db, s), LocalWakeChannel)

    def test_postgres_gets_listen_notify_channel(self):
        s = Settings(use_sqlite=False, wake_channel="kick_test")
        db = create_database(s)
        assert db.dialect == "postgres"
        wake = create_wake_channel(db, s)
        assert isinstance(wake, PostgresWakeChannel)
        assert wake.channel == "kick_test"
