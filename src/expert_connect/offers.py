"""Offer lifecycle - what an expert can do with an offer addressed to them."""

from __future__ import annotations

import logging

from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.config import Settings
from expert_connect.core.errors import AccessDenied, Conflict, NotFound
from expert_connect.core.models import (
    AcceptResult,
    ConnectionRequest,
    Notification,
    RequestStatus,
    RequestView,
)
from expert_connect.notifier import Notifier, deliver
from expert_connect.queue import ConnectionQueue, require_id
from expert_connect.wake import WakeChannel

logger = logging.getLogger(__name__)

# Fields cleared whenever an offer goes back to the queue.
_REQUEUE_FIELDS = dict(
    status=RequestStatus.QUEUED,
    expert_id=None,
    offered_at=None,
    offer_expires_at=None,
)


class OfferLifecycle:
    def __init__(
        self,
        db,
        queue: ConnectionQueue,
        notifier: Notifier,
        wake: WakeChannel,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.queue = queue
        self.notifier = notifier
        self.wake = wake
        self.settings = settings or Settings()
        self.clock = clock

    async def list_my_offers(self, expert_id: int) -> list[RequestView]:
        """Live offers addressed to the expert, oldest first."""
        require_id(expert_id, "expert_id")
        now = self.clock()
        async with self.db.transaction(readonly=True) as tx:
            rows = await tx.fetch(
                """
                SELECT * FROM connection_requests
                WHERE expert_id = $1
                  AND status = 'offered'
                  AND offer_expires_at > $2
                ORDER BY offered_at ASC, id ASC
                LIMIT $3
                """,
                expert_id, now, self.settings.max_offers_listed,
            )
            return [await self.queue.view(tx, ConnectionRequest(**r)) for r in rows]

    async def _lock_offer(self, tx, request_id: int, expert_id: int) -> ConnectionRequest:
        request = await repo.get_request(tx, request_id, lock=True)
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        if request.expert_id != expert_id:
            raise AccessDenied(f"Request {request_id} is not offered to expert {expert_id}")
        if request.status != RequestStatus.OFFERED:
            raise Conflict(f"Request {request_id} is {request.status.value}, not offered")
        return request

    async def accept(self, request_id: int, expert_id: int) -> AcceptResult:
        """Turn the offer into an assignment, or report that it lapsed.

        A lapsed offer is returned to the queue in the same transaction and
        the result carries ``expired=True``; the expert's load is untouched.
        """
        require_id(request_id, "request_id")
        require_id(expert_id, "expert_id")
        now = self.clock()
        async with self.db.transaction() as tx:
            request = await self._lock_offer(tx, request_id, expert_id)

            if request.offer_expires_at is None or request.offer_expires_at <= now:
                requeued = await repo.update_request(
                    tx, request_id, RequestStatus.OFFERED, now, **_REQUEUE_FIELDS
                )
                await self.queue.refresh(tx, now)
                result = AcceptResult(
                    request=await self.view_after_refresh(tx, requeued.id),
                    expired=True,
                )
            else:
                availability = await repo.get_availability(tx, expert_id, lock=True)
                if availability is None or not availability.is_online:
                    raise Conflict(f"Expert {expert_id} is not online")
                if availability.free_slots < 1:
                    raise Conflict(f"Expert {expert_id} has no free slots")

                assigned = await repo.update_request(
                    tx, request_id, RequestStatus.OFFERED, now,
                    status=RequestStatus.ASSIGNED,
                    assigned_at=now,
                    offered_at=None,
                    offer_expires_at=None,
                )
                await repo.increment_load(tx, expert_id, now)
                result = AcceptResult(request=await self.queue.view(tx, assigned))

        if result.expired:
            logger.info("Offer %s lapsed before expert %s accepted; requeued", request_id, expert_id)
            await self.wake.publish()
            return result

        logger.info("Expert %s accepted request %s", expert_id, request_id)
        await deliver(
            self.notifier,
            result.request.client_id,
            Notification(
                title="Expert accepted your request",
                body="Tap to connect now.",
                data={
                    "type": "expert_connect_offer_accepted",
                    "expert_connect_request_id": request_id,
                    "client_user_id": result.request.client_id,
                    "expert_user_id": expert_id,
                },
            ),
            "expert_connect.offer.accepted",
        )
        return result

    async def reject(self, request_id: int, expert_id: int, reason: str | None = None) -> RequestView:
        """Decline an offer. The request returns to the queue at its FIFO place."""
        require_id(request_id, "request_id")
        require_id(expert_id, "expert_id")
        reason = (reason or "").strip()[: self.settings.rejected_reason_max_length] or None
        now = self.clock()
        async with self.db.transaction() as tx:
            await self._lock_offer(tx, request_id, expert_id)
            await repo.update_request(
                tx, request_id, RequestStatus.OFFERED, now,
                rejected_at=now,
                rejected_reason=reason,
                **_REQUEUE_FIELDS,
            )
            await self.queue.refresh(tx, now)
            view = await self.view_after_refresh(tx, request_id)

        logger.info("Expert %s rejected request %s (reason=%r)", expert_id, request_id, reason)
        await self.wake.publish()
        return view

    async def view_after_refresh(self, tx, request_id: int) -> RequestView:
        request = await repo.get_request(tx, request_id)
        return await self.queue.view(tx, request)
