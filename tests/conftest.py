"""Shared test fixtures.

Every test gets a fresh in-memory SQLite database, a fake clock, a
recording notifier and the in-process wake channel.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from expert_connect.core.config import Settings
from expert_connect.core.database import Database
from expert_connect.core.models import Notification
from expert_connect.notifier import Notifier
from expert_connect.service import ExpertConnectService
from expert_connect.wake import LocalWakeChannel


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[int, str, Notification]] = []
        self.fail = fail

    async def notify(self, user_id: int, notification: Notification, event_key: str) -> None:
        if self.fail:
            raise RuntimeError("delivery service down")
        self.sent.append((user_id, event_key, notification))

    def events_for(self, user_id: int) -> list[str]:
        return [event for uid, event, _ in self.sent if uid == user_id]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        use_sqlite=True,
        sqlite_path=":memory:",
        offer_ttl_seconds=30,
        avg_session_seconds=600,
        queue_timeout_seconds=0,
        dispatch_batch=10,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def wake() -> LocalWakeChannel:
    return LocalWakeChannel()


@pytest_asyncio.fixture
async def wakes(wake) -> list[int]:
    """Record every wake published on the channel."""
    seen: list[int] = []
    await wake.subscribe(lambda: seen.append(1))
    return seen


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def service(db, wake, notifier, settings, clock) -> ExpertConnectService:
    return ExpertConnectService(db=db, wake=wake, notifier=notifier, settings=settings, clock=clock)


@pytest.fixture
def add_user(db):
    """Factory fixture: insert a user row and return its id."""

    async def _add(user_id: int, role: str = "client", display_name: str | None = None) -> int:
        async with db.transaction() as tx:
            await tx.execute(
                "INSERT INTO users (id, role, display_name, email) VALUES ($1, $2, $3, $4)",
                user_id, role, display_name or f"{role} {user_id}", f"{role}{user_id}@example.com",
            )
        return user_id

    return _add


@pytest.fixture
def add_expert(add_user, service):
    """Factory fixture: insert an expert and set their availability."""

    async def _add(user_id: int, capacity: int = 1, online: bool = True) -> int:
        await add_user(user_id, role="expert")
        await service.set_expert_online_status(user_id, online, capacity)
        return user_id

    return _add
