"""Tests for DisputeService: raising, negotiating, and settling disputes."""

from __future__ import annotations

import pytest

from escrow_coordinator.domain.enums import (
    DisputePriority,
    DisputeStatus,
    DisputeType,
    EventType,
    ResolutionAction,
    SLAStatus,
    TransactionStatus,
    TransitionFailure,
)
from escrow_coordinator.domain.exceptions import (
    ActiveDisputeExistsError,
    DisputeNotFoundError,
    InvalidDisputeTransitionError,
    NotADisputePartyError,
    RepositoryUnavailableError,
    ResolutionMissingError,
    TransitionError,
)
from tests.conftest import ADMIN, BUYER, SELLER


async def _assign(dispute, balancer, repository):
    """Give the dispute to the directory's admin and persist the assignment."""
    await balancer.assign(dispute)
    return await repository.save_dispute(dispute)


class TestRaiseDispute:
    @pytest.mark.asyncio
    async def test_opens_dispute_and_freezes_transaction(
        self, raised_dispute, transactions, bus
    ) -> None:
        dispute = await raised_dispute(priority=DisputePriority.HIGH)
        assert dispute.status is DisputeStatus.OPEN
        assert dispute.raiser_id == BUYER
        assert dispute.accused_id == SELLER
        assert dispute.priority is DisputePriority.HIGH

        tx = await transactions.get_transaction(dispute.transaction_id)
        assert tx.status is TransactionStatus.DISPUTED
        assert tx.disputed_at is not None
        assert bus.of_type(EventType.DISPUTE_UPDATED)[-1]["id"] == dispute.id

    @pytest.mark.asyncio
    async def test_one_active_dispute_per_transaction(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        with pytest.raises(ActiveDisputeExistsError):
            await disputes.raise_dispute(
                dispute.transaction_id, SELLER, DisputeType.PAYMENT, "Buyer never paid"
            )

    @pytest.mark.asyncio
    async def test_outsider_cannot_raise(self, joined_transaction, disputes) -> None:
        tx = await joined_transaction()
        with pytest.raises(TransitionError) as exc_info:
            await disputes.raise_dispute(tx.id, "mallory", DisputeType.FRAUD, "Looks fishy")
        assert exc_info.value.reason is TransitionFailure.WRONG_ROLE

    @pytest.mark.asyncio
    async def test_needs_a_counterparty(self, transactions, sample_request, disputes, repository):
        tx = await transactions.create_transaction(sample_request)
        with pytest.raises(TransitionError) as exc_info:
            await disputes.raise_dispute(tx.id, SELLER, DisputeType.OTHER, "Changed my mind")
        assert exc_info.value.reason is TransitionFailure.WRONG_STATUS
        assert await repository.get_active_dispute(tx.id) is None

    @pytest.mark.asyncio
    async def test_failed_dispute_write_restores_transaction(
        self, joined_transaction, disputes, transactions, repository, bus, monkeypatch
    ) -> None:
        tx = await joined_transaction()

        async def unavailable(*args, **kwargs):
            raise RepositoryUnavailableError("connection reset")

        monkeypatch.setattr(repository, "save_dispute", unavailable)
        with pytest.raises(RepositoryUnavailableError):
            await disputes.raise_dispute(tx.id, BUYER, DisputeType.DELIVERY, "Never arrived")

        restored = await transactions.get_transaction(tx.id)
        assert restored.status is tx.status
        assert restored.disputed_at is None
        assert bus.of_type(EventType.TRANSACTION_UPDATED)[-1]["status"] == tx.status.value

        monkeypatch.undo()
        dispute = await disputes.raise_dispute(
            tx.id, BUYER, DisputeType.DELIVERY, "Never arrived"
        )
        assert (await repository.get_active_dispute(tx.id)).id == dispute.id


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_both_parties_accept(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        proposed = await disputes.propose_resolution(
            dispute.id, SELLER, ResolutionAction.REFUND_FULL
        )
        assert proposed.resolution_accepted_by == {SELLER}
        assert not proposed.resolution_accepted

        accepted = await disputes.accept_resolution(dispute.id, BUYER)
        assert accepted.resolution_accepted
        assert accepted.version == dispute.version + 2

    @pytest.mark.asyncio
    async def test_accept_without_proposal(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        with pytest.raises(ResolutionMissingError):
            await disputes.accept_resolution(dispute.id, SELLER)

    @pytest.mark.asyncio
    async def test_only_parties_negotiate(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        with pytest.raises(NotADisputePartyError):
            await disputes.propose_resolution(
                dispute.id, "mallory", ResolutionAction.NO_ACTION
            )

    @pytest.mark.asyncio
    async def test_counter_proposal_resets_acceptance(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        await disputes.propose_resolution(dispute.id, SELLER, ResolutionAction.NO_ACTION)
        countered = await disputes.propose_resolution(
            dispute.id, BUYER, ResolutionAction.REFUND_PARTIAL
        )
        assert countered.resolution is ResolutionAction.REFUND_PARTIAL
        assert countered.resolution_accepted_by == {BUYER}

    @pytest.mark.asyncio
    async def test_reject_withdraws_the_proposal(self, raised_dispute, disputes, bus) -> None:
        dispute = await raised_dispute()
        await disputes.propose_resolution(dispute.id, SELLER, ResolutionAction.RELEASE_PAYMENT)
        rejected = await disputes.reject_resolution(dispute.id, BUYER)

        assert rejected.resolution is None
        assert rejected.resolution_proposed_by is None
        assert rejected.resolution_accepted_by == set()
        assert rejected.status is DisputeStatus.OPEN
        assert rejected.version == dispute.version + 2
        assert bus.of_type(EventType.DISPUTE_UPDATED)[-1]["resolution"] is None

        with pytest.raises(ResolutionMissingError):
            await disputes.accept_resolution(dispute.id, SELLER)

    @pytest.mark.asyncio
    async def test_reject_needs_a_proposal_and_a_party(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        with pytest.raises(ResolutionMissingError):
            await disputes.reject_resolution(dispute.id, BUYER)

        await disputes.propose_resolution(dispute.id, BUYER, ResolutionAction.REFUND_FULL)
        with pytest.raises(NotADisputePartyError):
            await disputes.reject_resolution(dispute.id, "mallory")


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_resolve_releases_payment_and_admin(
        self, raised_dispute, disputes, transactions, balancer, repository, directory
    ) -> None:
        dispute = await _assign(await raised_dispute(), balancer, repository)
        assert (await directory.list_admins())[0].current_load == 1

        resolved = await disputes.resolve(dispute.id, ResolutionAction.RELEASE_PAYMENT, ADMIN)
        assert resolved.status is DisputeStatus.RESOLVED
        assert resolved.resolved_at is not None

        tx = await transactions.get_transaction(dispute.transaction_id)
        assert tx.status is TransactionStatus.COMPLETED
        assert (await directory.list_admins())[0].current_load == 0

    @pytest.mark.asyncio
    async def test_no_action_leaves_transaction_disputed(
        self, raised_dispute, disputes, transactions
    ) -> None:
        dispute = await raised_dispute()
        await disputes.resolve(dispute.id, ResolutionAction.NO_ACTION, ADMIN)
        tx = await transactions.get_transaction(dispute.transaction_id)
        assert tx.status is TransactionStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_admin_released_exactly_once(
        self, raised_dispute, disputes, balancer, repository, directory
    ) -> None:
        # Extra unit of load so a second release would show up.
        dispute = await _assign(await raised_dispute(), balancer, repository)
        await directory.update_workload(ADMIN, 1)

        await disputes.resolve(dispute.id, ResolutionAction.REFUND_FULL, ADMIN)
        await disputes.close(dispute.id, ADMIN)
        assert (await directory.list_admins())[0].current_load == 1

    @pytest.mark.asyncio
    async def test_closed_is_final(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        closed = await disputes.close(dispute.id, SELLER, reason="Settled privately")
        assert closed.status is DisputeStatus.CLOSED
        with pytest.raises(InvalidDisputeTransitionError):
            await disputes.change_status(dispute.id, DisputeStatus.IN_REVIEW)
        with pytest.raises(InvalidDisputeTransitionError):
            await disputes.propose_resolution(dispute.id, BUYER, ResolutionAction.NO_ACTION)

    @pytest.mark.asyncio
    async def test_status_change_is_broadcast(self, raised_dispute, disputes, bus) -> None:
        dispute = await raised_dispute()
        await disputes.change_status(dispute.id, DisputeStatus.IN_REVIEW, reason="Needs review")
        change = bus.of_type(EventType.DISPUTE_UPDATED)[-1]["change"]
        assert change == {"from_status": "OPEN", "to_status": "IN_REVIEW", "reason": "Needs review"}

    @pytest.mark.asyncio
    async def test_invalid_target(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        with pytest.raises(InvalidDisputeTransitionError):
            await disputes.change_status(dispute.id, "ARCHIVED")


class TestReadHelpers:
    @pytest.mark.asyncio
    async def test_view_tracks_the_clock(self, raised_dispute, disputes, clock) -> None:
        dispute = await raised_dispute(priority=DisputePriority.URGENT)
        await clock.advance(hours=13)
        view = await disputes.get_dispute_view(dispute.id)
        assert view.sla_status is SLAStatus.AT_RISK
        assert view.elapsed_hours == pytest.approx(13)

    @pytest.mark.asyncio
    async def test_list_for_participant(self, raised_dispute, disputes) -> None:
        dispute = await raised_dispute()
        views = await disputes.list_for_participant(SELLER)
        assert [v.dispute.id for v in views] == [dispute.id]
        assert await disputes.list_for_participant("mallory") == []

    @pytest.mark.asyncio
    async def test_missing_dispute(self, disputes) -> None:
        with pytest.raises(DisputeNotFoundError):
            await disputes.get_dispute("nope")

    @pytest.mark.asyncio
    async def test_stats_count_by_status_and_type(self, raised_dispute, disputes) -> None:
        assert (await disputes.stats()).resolution_rate == 0.0

        first = await raised_dispute()
        await raised_dispute(dispute_type=DisputeType.PAYMENT)
        await disputes.resolve(first.id, ResolutionAction.REFUND_FULL, ADMIN)

        stats = await disputes.stats()
        assert stats.total == 2
        assert stats.resolved == 1
        assert stats.resolution_rate == pytest.approx(50.0)
        assert stats.by_status == {"RESOLVED": 1, "OPEN": 1}
        assert stats.by_type == {"DELIVERY": 1, "PAYMENT": 1}
