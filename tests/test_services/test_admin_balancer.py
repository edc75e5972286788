"""Tests for AdminWorkloadBalancer candidate selection and capacity tracking."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from escrow_coordinator.domain.enums import AdminAvailability, DisputeType
from escrow_coordinator.domain.models import AdminWorkload, Dispute
from escrow_coordinator.infrastructure.memory import InMemoryAdminDirectory
from escrow_coordinator.services.admin_balancer import AdminWorkloadBalancer

NOW = datetime(2025, 2, 1, tzinfo=UTC)


def _dispute(dispute_type: DisputeType = DisputeType.PAYMENT) -> Dispute:
    return Dispute(
        id="d-1",
        transaction_id="t-1",
        raiser_id="buyer",
        accused_id="seller",
        dispute_type=dispute_type,
        reason="Charged twice",
        created_at=NOW,
        updated_at=NOW,
    )


def _balancer(*admins: AdminWorkload) -> tuple[AdminWorkloadBalancer, InMemoryAdminDirectory]:
    directory = InMemoryAdminDirectory(admins)
    return AdminWorkloadBalancer(directory), directory


async def _load(directory: InMemoryAdminDirectory, admin_id: str) -> int:
    admins = {a.admin_id: a for a in await directory.list_admins()}
    return admins[admin_id].current_load


class TestPick:
    @pytest.mark.asyncio
    async def test_skips_offline_and_full_admins(self) -> None:
        balancer, _ = _balancer(
            AdminWorkload("away", max_load=3, availability=AdminAvailability.AWAY),
            AdminWorkload("full", max_load=2, current_load=2),
            AdminWorkload("free", max_load=2, current_load=1),
        )
        admin = await balancer.pick(_dispute())
        assert admin is not None
        assert admin.admin_id == "free"

    @pytest.mark.asyncio
    async def test_prefers_specialists(self) -> None:
        balancer, _ = _balancer(
            AdminWorkload("generalist", max_load=5),
            AdminWorkload("fraud", max_load=5, specialties=["fraud"]),
        )
        admin = await balancer.pick(_dispute(DisputeType.FRAUD))
        assert admin.admin_id == "fraud"

    @pytest.mark.asyncio
    async def test_falls_back_to_first_in_order(self) -> None:
        balancer, _ = _balancer(
            AdminWorkload("first", max_load=5, specialties=["QUALITY"]),
            AdminWorkload("second", max_load=5),
        )
        admin = await balancer.pick(_dispute(DisputeType.DELIVERY))
        assert admin.admin_id == "first"

    @pytest.mark.asyncio
    async def test_nobody_available(self) -> None:
        balancer, _ = _balancer(
            AdminWorkload("off", max_load=5, availability=AdminAvailability.OFFLINE)
        )
        assert await balancer.pick(_dispute()) is None


class TestAssignAndRelease:
    @pytest.mark.asyncio
    async def test_assign_takes_capacity(self) -> None:
        balancer, directory = _balancer(AdminWorkload("ada", max_load=1))
        dispute = _dispute()
        admin = await balancer.assign(dispute)
        assert admin.current_load == 1
        assert dispute.assigned_admin_id == "ada"

        # Full now, so the next dispute waits.
        assert await balancer.assign(_dispute()) is None
        assert await _load(directory, "ada") == 1

    @pytest.mark.asyncio
    async def test_already_assigned_is_left_alone(self) -> None:
        balancer, directory = _balancer(AdminWorkload("ada", max_load=3))
        dispute = _dispute()
        dispute.assigned_admin_id = "someone-else"
        assert await balancer.assign(dispute) is None
        assert await _load(directory, "ada") == 0

    @pytest.mark.asyncio
    async def test_release_gives_capacity_back(self) -> None:
        balancer, directory = _balancer(AdminWorkload("ada", max_load=3))
        dispute = _dispute()
        await balancer.assign(dispute)
        await balancer.release(dispute)
        assert await _load(directory, "ada") == 0

    @pytest.mark.asyncio
    async def test_release_without_admin_is_noop(self) -> None:
        balancer, directory = _balancer(AdminWorkload("ada", max_load=3, current_load=2))
        await balancer.release(_dispute())
        assert await _load(directory, "ada") == 2


class TestProvisional:
    @pytest.mark.asyncio
    async def test_kept_when_block_succeeds(self) -> None:
        balancer, directory = _balancer(AdminWorkload("ada", max_load=3))
        dispute = _dispute()
        async with balancer.provisional(dispute) as admin:
            assert admin.admin_id == "ada"
        assert dispute.assigned_admin_id == "ada"
        assert await _load(directory, "ada") == 1

    @pytest.mark.asyncio
    async def test_rolled_back_when_block_raises(self) -> None:
        balancer, directory = _balancer(AdminWorkload("ada", max_load=3))
        dispute = _dispute()
        with pytest.raises(RuntimeError):
            async with balancer.provisional(dispute):
                raise RuntimeError("save failed")
        assert dispute.assigned_admin_id is None
        assert await _load(directory, "ada") == 0
