"""Tests for expert online status, capacity and load tracking."""

from __future__ import annotations

import pytest

from expert_connect.core.errors import InvalidInput, NotAnExpert, NotFound


class TestSetOnlineStatus:
    async def test_creates_row(self, service, add_user, wakes):
        await add_user(50, role="expert")
        availability = await service.set_expert_online_status(50, True, 3)
        assert availability.is_online is True
        assert availability.max_concurrent_clients == 3
        assert availability.current_active_clients == 0
        assert len(wakes) == 1

    async def test_defaults_capacity_to_one(self, service, add_user):
        await add_user(50, role="expert")
        availability = await service.set_expert_online_status(50, True)
        assert availability.max_concurrent_clients == 1

    async def test_update_keeps_capacity_when_omitted(self, service, add_expert):
        await add_expert(50, capacity=4)
        availability = await service.set_expert_online_status(50, False)
        assert availability.is_online is False
        assert availability.max_concurrent_clients == 4

    async def test_role_is_normalized(self, service, add_user):
        await add_user(50, role="  Expert ")
        availability = await service.set_expert_online_status(50, True, 2)
        assert availability.max_concurrent_clients == 2

    async def test_not_an_expert(self, service, add_user):
        await add_user(1, role="client")
        with pytest.raises(NotAnExpert):
            await service.set_expert_online_status(1, True)

    async def test_unknown_expert(self, service):
        with pytest.raises(NotFound):
            await service.set_expert_online_status(404, True)

    @pytest.mark.parametrize("bad", [0, -1, 2.5, "3", True])
    async def test_invalid_capacity(self, service, add_user, bad):
        await add_user(50, role="expert")
        with pytest.raises(InvalidInput):
            await service.set_expert_online_status(50, True, bad)

    async def test_cannot_shrink_below_load(self, service, add_user, add_expert):
        await add_expert(50, capacity=2)
        for uid in (1, 2):
            await add_user(uid)
            result = await service.request_connection(uid)
            await service.dispatcher.dispatch_once()
            await service.accept(result.request.id, 50)

        with pytest.raises(InvalidInput, match="current active clients"):
            await service.set_expert_online_status(50, True, 1)
        assert await service.availability.load(50) == 2


class TestProvisioning:
    async def test_experts_without_rows_get_defaults(self, service, add_user):
        await add_user(50, role="expert")
        await add_user(51, role="EXPERT")
        await add_user(1, role="client")
        assert await service.availability.ensure_provisioned() == 2

        availability = await service.availability.get(50)
        assert availability.is_online is True
        assert availability.max_concurrent_clients == 1
        assert await service.availability.get(1) is None

    async def test_is_idempotent(self, service, add_user):
        await add_user(50, role="expert")
        await service.availability.ensure_provisioned()
        assert await service.availability.ensure_provisioned() == 0


class TestLoad:
    async def test_missing_row(self, service):
        with pytest.raises(NotFound):
            await service.availability.load(50)

    async def test_no_drift_after_normal_flow(self, service, add_user, add_expert):
        await add_expert(50, capacity=2)
        await add_user(1)
        result = await service.request_connection(1)
        await service.dispatcher.dispatch_once()
        await service.accept(result.request.id, 50)
        assert await service.availability.find_load_drift() == []

    async def test_drift_is_reported(self, service, add_expert, db, clock):
        await add_expert(50, capacity=2)
        async with db.transaction() as tx:
            await tx.execute(
                "UPDATE expert_availability SET current_active_clients = 1 WHERE expert_id = $1", 50
            )
        drift = await service.availability.find_load_drift()
        assert len(drift) == 1
        assert drift[0].expert_id == 50
        assert drift[0].current_active_clients == 1
        assert drift[0].derived_active_clients == 0
