"""Tests for listing, accepting and rejecting offers."""

from __future__ import annotations

import pytest

from expert_connect.core import repository as repo
from expert_connect.core.errors import AccessDenied, Conflict, InvalidInput, NotFound
from expert_connect.core.models import RequestStatus


@pytest.fixture
def offered(service, add_user, add_expert):
    """Factory fixture: queue a request for a client and offer it to an expert."""

    async def _offer(client_id: int = 1, expert_id: int = 50, capacity: int = 1) -> int:
        if await service.availability.get(expert_id) is None:
            await add_expert(expert_id, capacity=capacity)
        await add_user(client_id)
        result = await service.request_connection(client_id)
        attempt = await service.dispatcher.dispatch_once()
        assert attempt.request_id == result.request.id
        return result.request.id

    return _offer


class TestListMyOffers:
    async def test_lists_live_offers(self, service, offered):
        request_id = await offered()
        offers = await service.list_my_offers(50)
        assert [o.id for o in offers] == [request_id]
        assert offers[0].client.id == 1
        assert offers[0].status == RequestStatus.OFFERED

    async def test_excludes_lapsed_offers(self, service, offered, clock):
        await offered()
        clock.advance(31)
        assert await service.list_my_offers(50) == []

    async def test_only_own_offers(self, service, offered, add_expert):
        await add_expert(51)
        await offered(expert_id=50)
        assert await service.list_my_offers(51) == []

    async def test_ordered_and_capped(self, service, settings, offered, clock):
        settings.max_offers_listed = 2
        ids = []
        for uid in (1, 2, 3):
            ids.append(await offered(client_id=uid, capacity=3))
            clock.advance(1)
        offers = await service.list_my_offers(50)
        assert [o.id for o in offers] == ids[:2]


class TestAccept:
    async def test_assigns_and_takes_load(self, service, offered, clock, notifier):
        request_id = await offered()
        result = await service.accept(request_id, 50)

        assert result.expired is False
        assert result.request.status == RequestStatus.ASSIGNED
        assert result.request.assigned_at == clock()
        assert result.request.offer_expires_at is None
        assert result.request.can_start_connect_flow is True
        assert result.request.expert.id == 50
        assert await service.availability.load(50) == 1
        assert notifier.events_for(1) == ["expert_connect.offer.accepted"]

    async def test_accept_after_expiry(self, service, offered, clock, wakes, notifier):
        request_id = await offered()
        clock.advance(31)
        published = len(wakes)

        result = await service.accept(request_id, 50)

        assert result.expired is True
        assert result.request.status == RequestStatus.QUEUED
        assert result.request.expert_id is None
        assert result.request.position == 1
        assert await service.availability.load(50) == 0
        assert len(wakes) == published + 1
        assert notifier.events_for(1) == []

    async def test_double_accept_conflicts(self, service, offered):
        request_id = await offered()
        await service.accept(request_id, 50)
        with pytest.raises(Conflict):
            await service.accept(request_id, 50)
        assert await service.availability.load(50) == 1

    async def test_other_expert_denied(self, service, offered, add_expert):
        await add_expert(51)
        request_id = await offered(expert_id=50)
        with pytest.raises(AccessDenied):
            await service.accept(request_id, 51)

    async def test_unknown_request(self, service):
        with pytest.raises(NotFound):
            await service.accept(999, 50)

    async def test_malformed_ids(self, service):
        with pytest.raises(InvalidInput):
            await service.accept(0, 50)

    async def test_expert_went_offline(self, service, offered):
        request_id = await offered()
        await service.set_expert_online_status(50, False)
        with pytest.raises(Conflict, match="not online"):
            await service.accept(request_id, 50)

        async with service.db.transaction(readonly=True) as tx:
            request = await repo.get_request(tx, request_id)
        assert request.status == RequestStatus.OFFERED


class TestReject:
    async def test_requeues_without_touching_load(self, service, offered, clock, wakes):
        request_id = await offered()
        published = len(wakes)

        view = await service.reject(request_id, 50, "  In another call  ")

        assert view.status == RequestStatus.QUEUED
        assert view.expert_id is None
        assert view.offered_at is None
        assert view.rejected_at == clock()
        assert view.rejected_reason == "In another call"
        assert view.position == 1
        assert await service.availability.load(50) == 0
        assert len(wakes) == published + 1

    async def test_reason_truncated(self, service, offered):
        request_id = await offered()
        view = await service.reject(request_id, 50, "x" * 900)
        assert len(view.rejected_reason) == 500

    async def test_blank_reason_stored_as_none(self, service, offered):
        request_id = await offered()
        view = await service.reject(request_id, 50, "   ")
        assert view.rejected_reason is None

    async def test_keeps_fifo_place(self, service, offered, add_user, clock):
        request_id = await offered(client_id=1)
        clock.advance(1)
        await add_user(2)
        await service.request_connection(2)

        await service.reject(request_id, 50)
        assert await service.queue.position(request_id) == 1

    async def test_reject_non_offered_conflicts(self, service, offered):
        request_id = await offered()
        await service.accept(request_id, 50)
        with pytest.raises(Conflict):
            await service.reject(request_id, 50)

    async def test_other_expert_denied(self, service, offered, add_expert):
        await add_expert(51)
        request_id = await offered(expert_id=50)
        with pytest.raises(AccessDenied):
            await service.reject(request_id, 51)
