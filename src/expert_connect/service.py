"""ExpertConnectService - the operation surface used by the API and workers.

Wires the components to one database, one wake channel, one notifier and
one clock. Construct it directly (tests) or with :meth:`from_settings`.
"""

from __future__ import annotations

import logging

from expert_connect.availability import AvailabilityRegistry
from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.config import Settings
from expert_connect.core.db_factory import create_database, create_wake_channel
from expert_connect.core.models import (
    AcceptResult,
    ActiveRequestResult,
    ActorRole,
    ConnectionResult,
    ExpertAvailability,
    QueueOverview,
    RequestView,
)
from expert_connect.dispatcher import MatchingDispatcher
from expert_connect.lifecycle import RequestLifecycle, parse_role
from expert_connect.notifier import Notifier, create_notifier
from expert_connect.offers import OfferLifecycle
from expert_connect.queue import ConnectionQueue, require_id
from expert_connect.reporting import QueueReporter
from expert_connect.wake import WakeChannel

logger = logging.getLogger(__name__)


class ExpertConnectService:
    def __init__(
        self,
        db,
        wake: WakeChannel,
        notifier: Notifier,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.wake = wake
        self.notifier = notifier
        self.settings = settings or Settings()
        self.clock = clock

        self.availability = AvailabilityRegistry(db, wake, self.settings, clock)
        self.queue = ConnectionQueue(db, wake, self.settings, clock)
        self.dispatcher = MatchingDispatcher(db, self.queue, notifier, self.settings, clock)
        self.offers = OfferLifecycle(db, self.queue, notifier, wake, self.settings, clock)
        self.lifecycle = RequestLifecycle(db, self.queue, notifier, wake, self.settings, clock)
        self.reporter = QueueReporter(db, clock)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, notifier: Notifier | None = None) -> ExpertConnectService:
        s = settings or Settings()
        db = create_database(s)
        return cls(
            db=db,
            wake=create_wake_channel(db, s),
            notifier=notifier or create_notifier(s),
            settings=s,
        )

    async def connect(self) -> None:
        await self.db.connect()
        logger.info("Connected to %s backend", self.db.dialect)

    async def close(self) -> None:
        await self.wake.close()
        await self.notifier.close()
        await self.db.close()

    # --- Clients ---

    async def request_connection(self, client_id: int) -> ConnectionResult:
        return await self.queue.enqueue(client_id)

    async def get_status(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        return await self.lifecycle.get_status(request_id, actor_id, actor_role)

    async def cancel(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        return await self.lifecycle.cancel(request_id, actor_id, actor_role)

    async def my_active_request(self, user_id: int, role) -> ActiveRequestResult:
        """The client's active request, or the expert's latest live one."""
        require_id(user_id, "user_id")
        actor_role = parse_role(role)
        async with self.db.transaction(readonly=True) as tx:
            if actor_role == ActorRole.EXPERT:
                request = await repo.get_active_request_for_expert(tx, user_id)
            else:
                request = await repo.get_active_request_for_client(tx, user_id)
            if request is None:
                return ActiveRequestResult(has_active_request=False)
            return ActiveRequestResult(
                has_active_request=True,
                request=await self.queue.view(tx, request),
            )

    # --- Experts ---

    async def set_expert_online_status(
        self,
        expert_id: int,
        is_online: bool,
        max_concurrent: int | None = None,
    ) -> ExpertAvailability:
        require_id(expert_id, "expert_id")
        return await self.availability.set_online_status(expert_id, is_online, max_concurrent)

    async def list_my_offers(self, expert_id: int) -> list[RequestView]:
        return await self.offers.list_my_offers(expert_id)

    async def accept(self, request_id: int, expert_id: int) -> AcceptResult:
        return await self.offers.accept(request_id, expert_id)

    async def reject(self, request_id: int, expert_id: int, reason: str | None = None) -> RequestView:
        return await self.offers.reject(request_id, expert_id, reason)

    async def mark_connected(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        return await self.lifecycle.mark_connected(request_id, actor_id, actor_role)

    async def complete(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        return await self.lifecycle.complete(request_id, actor_id, actor_role)

    # --- Operators ---

    async def queue_overview(self) -> QueueOverview:
        return await self.reporter.queue_overview()
