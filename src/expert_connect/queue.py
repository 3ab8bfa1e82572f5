"""Connection queue - request intake, FIFO position and wait estimates."""

from __future__ import annotations

import logging
import math
from datetime import datetime

from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.config import Settings
from expert_connect.core.errors import InvalidInput, NotFound, UniqueViolation
from expert_connect.core.models import (
    ConnectionRequest,
    ConnectionResult,
    RequestStatus,
    RequestView,
)
from expert_connect.state_machine import LOAD_STATES
from expert_connect.wake import WakeChannel

logger = logging.getLogger(__name__)


def estimate_wait_seconds(position: int | None, capacity: int, avg_session_seconds: int) -> int | None:
    """Coarse wave-based estimate: each wave serves ``capacity`` clients.

    Returns 0 for a non-positive position and None when nobody is online.
    """
    if position is None or position <= 0:
        return 0
    if capacity <= 0:
        return None
    return math.ceil(position / capacity) * avg_session_seconds


def require_id(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidInput(f"{field} must be a positive integer")
    return value


class ConnectionQueue:
    """Owns queued requests and the derived position/wait figures."""

    def __init__(
        self,
        db,
        wake: WakeChannel,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.wake = wake
        self.settings = settings or Settings()
        self.clock = clock

    async def enqueue(self, client_id: int) -> ConnectionResult:
        """Queue a request for the client, or return their active one."""
        require_id(client_id, "client_id")
        now = self.clock()
        try:
            async with self.db.transaction() as tx:
                user = await repo.get_user(tx, client_id)
                if user is None:
                    raise NotFound(f"Client {client_id} not found")
                if (user.role or "").strip().lower() != "client":
                    raise InvalidInput(f"User {client_id} is not a client")

                existing = await repo.get_active_request_for_client(tx, client_id)
                if existing is not None:
                    result = ConnectionResult(
                        is_existing=True,
                        status=existing.status,
                        request=await self.view(tx, existing),
                    )
                else:
                    created = await repo.insert_queued_request(tx, client_id, now)
                    await self.refresh(tx, now)
                    created = await repo.get_request(tx, created.id)
                    result = ConnectionResult(
                        is_existing=False,
                        status=RequestStatus.QUEUED,
                        request=await self.view(tx, created),
                    )
                    logger.info(
                        "Queued request %s for client %s at position %s",
                        created.id, client_id, result.request.position,
                    )
        except UniqueViolation:
            # A concurrent submission won the race for the active slot.
            async with self.db.transaction(readonly=True) as tx:
                existing = await repo.get_active_request_for_client(tx, client_id)
                if existing is None:
                    raise
                result = ConnectionResult(
                    is_existing=True,
                    status=existing.status,
                    request=await self.view(tx, existing),
                )

        if result.status == RequestStatus.QUEUED:
            await self.wake.publish()
        return result

    async def position(self, request_id: int) -> int | None:
        async with self.db.transaction(readonly=True) as tx:
            return await repo.queue_position(tx, request_id)

    async def estimated_wait_seconds(self, position: int | None) -> int | None:
        async with self.db.transaction(readonly=True) as tx:
            capacity = await repo.total_online_capacity(tx)
        return estimate_wait_seconds(position, capacity, self.settings.avg_session_seconds)

    async def normalize_positions(self) -> int:
        """Full recompute of queued positions and waits. Returns rows changed."""
        async with self.db.transaction() as tx:
            return await self.refresh(tx, self.clock())

    async def refresh(self, tx, now: datetime) -> int:
        """Recompute figures inside a caller's transaction."""
        capacity = await repo.total_online_capacity(tx)
        return await repo.normalize_positions(tx, now, capacity, self.settings.avg_session_seconds)

    async def view(self, tx, request: ConnectionRequest) -> RequestView:
        """Serialize a request with live queue figures and both parties."""
        if request.status == RequestStatus.QUEUED:
            position = await repo.queue_position(tx, request.id)
            capacity = await repo.total_online_capacity(tx)
            wait = estimate_wait_seconds(position, capacity, self.settings.avg_session_seconds)
        else:
            position = None
            wait = 0

        client = await repo.get_user(tx, request.client_id)
        expert = await repo.get_user(tx, request.expert_id) if request.expert_id else None

        data = request.model_dump()
        data.update(
            position=position,
            estimated_wait_seconds=wait,
            client=client,
            expert=expert,
            can_start_connect_flow=request.status in LOAD_STATES,
        )
        return RequestView(**data)
