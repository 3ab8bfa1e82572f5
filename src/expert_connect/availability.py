"""Availability registry - expert online status, capacity and load."""

from __future__ import annotations

import logging

from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.config import Settings
from expert_connect.core.errors import InvalidInput, NotAnExpert, NotFound
from expert_connect.core.models import ExpertAvailability, LoadDrift
from expert_connect.state_machine import LOAD_STATES, sql_in
from expert_connect.wake import WakeChannel

logger = logging.getLogger(__name__)


class AvailabilityRegistry:
    """Tracks which experts are eligible for offers and how loaded they are.

    Changing availability never assigns anything itself; it only publishes a
    wake so the dispatcher picks up the new capacity promptly.
    """

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

    async def ensure_provisioned(self) -> int:
        """Create default availability rows for experts that lack one."""
        async with self.db.transaction() as tx:
            created = await repo.ensure_provisioned(tx, self.clock())
        if created:
            logger.info("Provisioned availability for %d expert(s)", created)
        return created

    async def set_online_status(
        self,
        expert_id: int,
        is_online: bool,
        max_concurrent: int | None = None,
    ) -> ExpertAvailability:
        if max_concurrent is not None and (
            isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) or max_concurrent < 1
        ):
            raise InvalidInput("max_concurrent_clients must be an integer >= 1")

        now = self.clock()
        async with self.db.transaction() as tx:
            user = await repo.get_user(tx, expert_id)
            if user is None:
                raise NotFound(f"Expert {expert_id} not found")
            if (user.role or "").strip().lower() != "expert":
                raise NotAnExpert(f"User {expert_id} is not an expert")

            current = await repo.get_availability(tx, expert_id, lock=True)
            if current is None:
                row = await tx.fetchrow(
                    """
                    INSERT INTO expert_availability (
                        expert_id, is_online, max_concurrent_clients,
                        current_active_clients, created_at, updated_at
                    ) VALUES ($1, $2, $3, 0, $4, $4)
                    RETURNING *
                    """,
                    expert_id, bool(is_online), max_concurrent or 1, now,
                )
            else:
                next_max = max_concurrent if max_concurrent is not None else current.max_concurrent_clients
                if next_max < current.current_active_clients:
                    raise InvalidInput(
                        "max_concurrent_clients cannot be lower than current active clients "
                        f"({current.current_active_clients})"
                    )
                row = await tx.fetchrow(
                    """
                    UPDATE expert_availability
                    SET is_online = $2, max_concurrent_clients = $3, updated_at = $4
                    WHERE expert_id = $1
                    RETURNING *
                    """,
                    expert_id, bool(is_online), next_max, now,
                )

        availability = ExpertAvailability(**row)
        logger.info(
            "Expert %s online=%s capacity=%d load=%d",
            expert_id, availability.is_online,
            availability.max_concurrent_clients, availability.current_active_clients,
        )
        await self.wake.publish()
        return availability

    async def get(self, expert_id: int) -> ExpertAvailability | None:
        async with self.db.transaction(readonly=True) as tx:
            return await repo.get_availability(tx, expert_id)

    async def load(self, expert_id: int) -> int:
        """Current number of assigned/connected clients held by an expert."""
        availability = await self.get(expert_id)
        if availability is None:
            raise NotFound(f"No availability row for expert {expert_id}")
        return availability.current_active_clients

    async def find_load_drift(self) -> list[LoadDrift]:
        """Experts whose load counter disagrees with their active requests."""
        async with self.db.transaction(readonly=True) as tx:
            rows = await tx.fetch(
                f"""
                SELECT
                    ea.expert_id,
                    ea.current_active_clients,
                    (
                        SELECT COUNT(*) FROM connection_requests q
                        WHERE q.expert_id = ea.expert_id
                          AND q.status IN ({sql_in(LOAD_STATES)})
                    ) AS derived_active_clients
                FROM expert_availability ea
                ORDER BY ea.expert_id
                """
            )
        return [
            LoadDrift(**r)
            for r in rows
            if r["current_active_clients"] != r["derived_active_clients"]
        ]
