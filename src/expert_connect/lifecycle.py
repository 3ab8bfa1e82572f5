"""Downstream transitions - connect, complete and cancel an existing request."""

from __future__ import annotations

import logging

from expert_connect.core import repository as repo
from expert_connect.core.clock import Clock, utc_now
from expert_connect.core.config import Settings
from expert_connect.core.errors import AccessDenied, Conflict, InvalidInput, NotFound
from expert_connect.core.models import (
    ActorRole,
    ConnectionRequest,
    Notification,
    RequestStatus,
    RequestView,
)
from expert_connect.notifier import Notifier, deliver
from expert_connect.queue import ConnectionQueue, require_id
from expert_connect.state_machine import (
    EXPERT_ACTIVE_STATES,
    LOAD_STATES,
    is_terminal,
    validate_transition,
)
from expert_connect.wake import WakeChannel

logger = logging.getLogger(__name__)


def parse_role(role: str | ActorRole | None) -> ActorRole:
    if isinstance(role, ActorRole):
        return role
    try:
        return ActorRole((role or "").strip().lower())
    except ValueError:
        raise InvalidInput(f"Unknown actor role: {role!r}")


def assert_request_access(request: ConnectionRequest, actor_id: int, role: ActorRole) -> None:
    """Admins see everything; clients their own requests; experts the ones they hold."""
    if role == ActorRole.ADMIN:
        return
    if role == ActorRole.CLIENT and request.client_id == actor_id:
        return
    if role == ActorRole.EXPERT and request.expert_id == actor_id:
        return
    raise AccessDenied(f"Actor {actor_id} ({role.value}) may not access request {request.id}")


class RequestLifecycle:
    """Transitions after assignment, plus cancellation from any active state."""

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

    async def _lock_for_actor(self, tx, request_id: int, actor_id: int, role: ActorRole) -> ConnectionRequest:
        request = await repo.get_request(tx, request_id, lock=True)
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        assert_request_access(request, actor_id, role)
        return request

    async def get_status(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        require_id(request_id, "request_id")
        require_id(actor_id, "actor_id")
        role = parse_role(actor_role)
        async with self.db.transaction(readonly=True) as tx:
            request = await repo.get_request(tx, request_id)
            if request is None:
                raise NotFound(f"Request {request_id} not found")
            assert_request_access(request, actor_id, role)
            return await self.queue.view(tx, request)

    async def mark_connected(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        require_id(request_id, "request_id")
        require_id(actor_id, "actor_id")
        role = parse_role(actor_role)
        now = self.clock()
        async with self.db.transaction() as tx:
            request = await self._lock_for_actor(tx, request_id, actor_id, role)
            if is_terminal(request.status) or request.status == RequestStatus.CONNECTED:
                return await self.queue.view(tx, request)
            validate_transition(request.status, RequestStatus.CONNECTED)

            connected = await repo.update_request(
                tx, request_id, request.status, now,
                status=RequestStatus.CONNECTED,
                connected_at=now,
            )
            view = await self.queue.view(tx, connected)

        logger.info("Request %s connected", request_id)
        return view

    async def complete(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        require_id(request_id, "request_id")
        require_id(actor_id, "actor_id")
        role = parse_role(actor_role)
        now = self.clock()
        async with self.db.transaction() as tx:
            request = await self._lock_for_actor(tx, request_id, actor_id, role)
            if is_terminal(request.status):
                return await self.queue.view(tx, request)
            validate_transition(request.status, RequestStatus.COMPLETED)

            completed = await repo.update_request(
                tx, request_id, request.status, now,
                status=RequestStatus.COMPLETED,
                completed_at=now,
            )
            await repo.decrement_load(tx, request.expert_id, now)
            view = await self.queue.view(tx, completed)

        logger.info("Request %s completed (expert %s)", request_id, request.expert_id)
        await deliver(
            self.notifier,
            view.client_id,
            Notification(
                title="Session completed",
                body="How was your conversation? Tap to rate it.",
                data={
                    "type": "expert_connect_session_completed",
                    "expert_connect_request_id": request_id,
                    "client_user_id": view.client_id,
                    "expert_user_id": view.expert_id,
                    "ask_for_rating": True,
                },
            ),
            "expert_connect.session.completed",
        )
        await self.wake.publish()
        return view

    async def cancel(self, request_id: int, actor_id: int, actor_role) -> RequestView:
        """Cancel from any active state; releases load only if it was held."""
        require_id(request_id, "request_id")
        require_id(actor_id, "actor_id")
        role = parse_role(actor_role)
        now = self.clock()
        async with self.db.transaction() as tx:
            request = await self._lock_for_actor(tx, request_id, actor_id, role)
            if is_terminal(request.status):
                return await self.queue.view(tx, request)
            validate_transition(request.status, RequestStatus.CANCELLED)

            cancelled = await repo.update_request(
                tx, request_id, request.status, now,
                status=RequestStatus.CANCELLED,
                cancelled_at=now,
                position=None,
                estimated_wait_seconds=None,
                offered_at=None,
                offer_expires_at=None,
            )
            if request.status in LOAD_STATES:
                await repo.decrement_load(tx, request.expert_id, now)
            await self.queue.refresh(tx, now)
            view = await self.queue.view(tx, cancelled)

        logger.info(
            "Request %s cancelled by %s %s (was %s)",
            request_id, role.value, actor_id, request.status.value,
        )
        if role == ActorRole.CLIENT and request.expert_id and request.status in EXPERT_ACTIVE_STATES:
            await deliver(
                self.notifier,
                request.expert_id,
                Notification(
                    title="Request cancelled",
                    body="The client cancelled the request.",
                    data={
                        "type": "expert_connect_request_cancelled_by_client",
                        "expert_connect_request_id": request_id,
                        "client_user_id": request.client_id,
                        "expert_user_id": request.expert_id,
                    },
                ),
                "expert_connect.request.cancelled_by_client",
            )
        await self.wake.publish()
        return view
