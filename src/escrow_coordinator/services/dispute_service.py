"""Dispute Service: raising, negotiating, and settling disputes.

Status changes are split in two so the workflow engine can batch them with
other field changes into a single save:

    change = service.apply_status(dispute, DisputeStatus.RESOLVED, reason="...")
    await repository.save_dispute(dispute, expected_version=...)
    await service.finalize(change)

apply_status() only validates (DisputeStateMachine) and mutates the record in
memory. finalize() runs the consequences that must follow a committed write:
giving back admin capacity, settling the transaction, broadcasting.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from escrow_coordinator.domain.enums import (
    DisputePriority,
    DisputeStatus,
    DisputeType,
    EventType,
    ResolutionAction,
    TransactionAction,
)
from escrow_coordinator.domain.exceptions import (
    ActiveDisputeExistsError,
    DisputeNotFoundError,
    InvalidDisputeTransitionError,
    NotADisputePartyError,
    ResolutionMissingError,
)
from escrow_coordinator.domain.models import Dispute, new_id
from escrow_coordinator.domain.sla import build_dispute_view
from escrow_coordinator.domain.state_machine import next_dispute_status
from escrow_coordinator.logging_config import get_logger
from escrow_coordinator.schemas.transaction import dispute_payload

if TYPE_CHECKING:
    from collections.abc import Mapping

    from escrow_coordinator.domain.models import Transaction
    from escrow_coordinator.domain.ports import Clock, EventGateway, Repository
    from escrow_coordinator.domain.sla import DisputeView, SLAConfig
    from escrow_coordinator.services.admin_balancer import AdminWorkloadBalancer
    from escrow_coordinator.services.transaction_service import TransactionService

logger = get_logger(__name__)


@dataclass
class StatusChange:
    """A validated, not yet committed, dispute status change."""

    dispute: Dispute
    from_status: DisputeStatus
    to_status: DisputeStatus
    reason: str

    @property
    def leaves_active(self) -> bool:
        return self.from_status.is_active and not self.to_status.is_active


@dataclass(frozen=True)
class DisputeStats:
    total: int
    resolved: int
    resolution_rate: float
    by_status: dict[str, int]
    by_type: dict[str, int]


class DisputeService:
    """Manages the dispute lifecycle around a disputed transaction."""

    def __init__(
        self,
        repository: Repository,
        transactions: TransactionService,
        balancer: AdminWorkloadBalancer,
        gateway: EventGateway,
        clock: Clock,
        sla_configs: Mapping[DisputePriority, SLAConfig] | None = None,
    ) -> None:
        self._repository = repository
        self._transactions = transactions
        self._balancer = balancer
        self._gateway = gateway
        self._clock = clock
        self._sla_configs = sla_configs

    # ------------------------------------------------------------------
    # Raising
    # ------------------------------------------------------------------

    async def raise_dispute(
        self,
        transaction_id: str,
        raiser_id: str,
        dispute_type: DisputeType,
        reason: str,
        priority: DisputePriority = DisputePriority.MEDIUM,
    ) -> Dispute:
        """Open a dispute and move the transaction to DISPUTED.

        If the dispute cannot be stored, the transaction is written back to
        the status it had before.

        Raises:
            TransactionNotFoundError: If the transaction does not exist.
            TransitionError: If the raiser is not a participant, nobody has
                joined yet, or the transaction status does not allow it.
            ActiveDisputeExistsError: If an OPEN/IN_REVIEW dispute already exists.
        """
        async with self._transactions.lock(transaction_id):
            active = await self._repository.get_active_dispute(transaction_id)
            if active is not None:
                raise ActiveDisputeExistsError(transaction_id, active.id)

            previous = await self._transactions.get_transaction(transaction_id)
            transaction = await self._transactions.transition_while_locked(
                transaction_id, raiser_id, TransactionAction.RAISE_DISPUTE
            )

            now = self._clock.now()
            dispute = Dispute(
                id=new_id(),
                transaction_id=transaction_id,
                raiser_id=raiser_id,
                accused_id=transaction.other_party(raiser_id) or "",
                dispute_type=dispute_type,
                reason=reason,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            try:
                dispute = await self._repository.save_dispute(dispute)
            except Exception:
                # A DISPUTED transaction without its dispute accepts no action.
                await self._restore_transaction(transaction, previous)
                raise

        await self._broadcast(dispute, change=None)
        logger.info(
            "dispute.raised",
            dispute_id=dispute.id,
            transaction_id=transaction_id,
            priority=str(priority),
            dispute_type=str(dispute_type),
        )
        return dispute

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def propose_resolution(
        self, dispute_id: str, actor_id: str, resolution: ResolutionAction
    ) -> Dispute:
        """Record a proposed outcome; the proposer counts as having accepted it."""
        dispute = await self._get_party_dispute(dispute_id, actor_id, "RESOLUTION_PROPOSED")
        expected = dispute.version
        dispute.resolution = resolution
        dispute.resolution_proposed_by = actor_id
        dispute.resolution_accepted_by = {actor_id}
        dispute = await self._save(dispute, expected)
        await self._broadcast(dispute, change=None)
        logger.info(
            "dispute.resolution_proposed",
            dispute_id=dispute_id,
            by=actor_id,
            resolution=str(resolution),
        )
        return dispute

    async def accept_resolution(self, dispute_id: str, actor_id: str) -> Dispute:
        """Accept the recorded resolution. Both parties accepting lets the
        escalation matrix resolve the dispute."""
        dispute = await self._get_party_dispute(dispute_id, actor_id, "RESOLUTION_ACCEPTED")
        if dispute.resolution is None:
            raise ResolutionMissingError(dispute_id)
        expected = dispute.version
        dispute.resolution_accepted_by = dispute.resolution_accepted_by | {actor_id}
        dispute = await self._save(dispute, expected)
        await self._broadcast(dispute, change=None)
        logger.info(
            "dispute.resolution_accepted",
            dispute_id=dispute_id,
            by=actor_id,
            fully_accepted=dispute.resolution_accepted,
        )
        return dispute

    async def reject_resolution(self, dispute_id: str, actor_id: str) -> Dispute:
        """Turn down the recorded resolution. The proposal is withdrawn, so a
        new one has to be proposed before anyone can accept again."""
        dispute = await self._get_party_dispute(dispute_id, actor_id, "RESOLUTION_REJECTED")
        if dispute.resolution is None:
            raise ResolutionMissingError(dispute_id)
        expected = dispute.version
        rejected = dispute.resolution
        dispute.resolution = None
        dispute.resolution_proposed_by = None
        dispute.resolution_accepted_by = set()
        dispute = await self._save(dispute, expected)
        await self._broadcast(dispute, change=None)
        logger.info(
            "dispute.resolution_rejected",
            dispute_id=dispute_id,
            by=actor_id,
            resolution=str(rejected),
        )
        return dispute

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def resolve(
        self, dispute_id: str, resolution: ResolutionAction, resolved_by: str
    ) -> Dispute:
        """Decide a dispute (admin or system) and settle its transaction."""
        dispute = await self._get_or_raise(dispute_id)
        expected = dispute.version
        dispute.resolution = resolution
        change = self.apply_status(
            dispute, DisputeStatus.RESOLVED, reason=f"resolved by {resolved_by}"
        )
        dispute = await self._save(dispute, expected)
        change.dispute = dispute
        await self.finalize(change)
        return dispute

    async def close(self, dispute_id: str, actor_id: str, reason: str = "") -> Dispute:
        return await self.change_status(
            dispute_id, DisputeStatus.CLOSED, reason=reason or f"closed by {actor_id}"
        )

    async def change_status(
        self, dispute_id: str, to_status: DisputeStatus, reason: str = ""
    ) -> Dispute:
        """Validate, persist, and finalize a single status change."""
        dispute = await self._get_or_raise(dispute_id)
        expected = dispute.version
        change = self.apply_status(dispute, to_status, reason)
        dispute = await self._save(dispute, expected)
        change.dispute = dispute
        await self.finalize(change)
        return dispute

    def apply_status(
        self, dispute: Dispute, to_status: DisputeStatus | str, reason: str = ""
    ) -> StatusChange:
        """Validate a status change and apply it to the in-memory record.

        Raises:
            InvalidDisputeTransitionError: If the dispute graph has no such edge.
        """
        from_status = dispute.status
        try:
            target = DisputeStatus(to_status)
            new_status = DisputeStatus(next_dispute_status(from_status.value, target.value))
        except (TransitionNotAllowed, ValueError) as err:
            raise InvalidDisputeTransitionError(from_status.value, str(to_status)) from err

        now = self._clock.now()
        dispute.status = new_status
        dispute.updated_at = now
        if new_status is DisputeStatus.RESOLVED:
            dispute.resolved_at = now
        return StatusChange(
            dispute=dispute, from_status=from_status, to_status=new_status, reason=reason
        )

    async def finalize(self, change: StatusChange) -> None:
        """Run the consequences of a committed status change.

        Admin capacity is given back exactly once, when the dispute leaves
        OPEN/IN_REVIEW. A resolution is applied to the transaction only on
        entering RESOLVED. Failures are logged: the dispute write already stands,
        and a settlement that did not land is picked up again by the
        workflow engine on its next tick.
        """
        dispute = change.dispute
        if change.leaves_active:
            try:
                await self._balancer.release(dispute)
            except Exception:
                logger.exception("dispute.admin_release_failed", dispute_id=dispute.id)

        if change.to_status is DisputeStatus.RESOLVED and dispute.resolution is not None:
            try:
                await self.settle(dispute)
            except Exception:
                logger.exception(
                    "dispute.resolution_apply_failed",
                    dispute_id=dispute.id,
                    transaction_id=dispute.transaction_id,
                )

        await self._broadcast(dispute, change=change)
        logger.info(
            "dispute.status_changed",
            dispute_id=dispute.id,
            from_status=change.from_status.value,
            to_status=change.to_status.value,
            reason=change.reason,
        )

    async def settle(self, dispute: Dispute) -> Transaction | None:
        """Apply a RESOLVED dispute's decision to its transaction.

        Returns None when the decision leaves the transaction as it is.
        """
        if dispute.resolution is None:
            return None
        transaction = await self._transactions.apply_resolution(
            dispute.transaction_id, dispute.resolution
        )
        if transaction is not None:
            logger.info(
                "dispute.settled",
                dispute_id=dispute.id,
                transaction_id=transaction.id,
                resolution=str(dispute.resolution),
                transaction_status=transaction.status.value,
            )
        return transaction

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: str) -> Dispute:
        return await self._get_or_raise(dispute_id)

    async def stats(self) -> DisputeStats:
        """Dispute counts by status and by type, plus the share resolved."""
        counts = await self._repository.count_disputes()
        by_status: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for (status, dispute_type), count in counts.items():
            by_status[status.value] = by_status.get(status.value, 0) + count
            by_type[dispute_type.value] = by_type.get(dispute_type.value, 0) + count
        total = sum(counts.values())
        resolved = by_status.get(DisputeStatus.RESOLVED.value, 0)
        return DisputeStats(
            total=total,
            resolved=resolved,
            resolution_rate=(resolved / total * 100) if total else 0.0,
            by_status=by_status,
            by_type=by_type,
        )

    async def get_dispute_view(self, dispute_id: str) -> DisputeView:
        """The dispute with SLA status and elapsed times computed for now."""
        dispute = await self._get_or_raise(dispute_id)
        return build_dispute_view(dispute, self._clock.now(), self._sla_configs)

    async def list_for_participant(self, user_id: str) -> list[DisputeView]:
        now = self._clock.now()
        disputes = await self._repository.get_disputes_by_participant(user_id)
        return [build_dispute_view(d, now, self._sla_configs) for d in disputes]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_or_raise(self, dispute_id: str) -> Dispute:
        dispute = await self._repository.get_dispute(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(dispute_id)
        return dispute

    async def _get_party_dispute(self, dispute_id: str, actor_id: str, step: str) -> Dispute:
        dispute = await self._get_or_raise(dispute_id)
        if not dispute.is_party(actor_id):
            raise NotADisputePartyError(dispute_id, actor_id)
        if not dispute.is_active:
            raise InvalidDisputeTransitionError(dispute.status.value, step)
        return dispute

    async def _restore_transaction(self, current: Transaction, previous: Transaction) -> None:
        try:
            await self._transactions.restore_while_locked(current, previous)
        except Exception:
            logger.exception(
                "dispute.transaction_restore_failed",
                transaction_id=current.id,
                status=current.status.value,
            )

    async def _save(self, dispute: Dispute, expected_version: int) -> Dispute:
        dispute.version = expected_version + 1
        dispute.updated_at = self._clock.now()
        return await self._repository.save_dispute(dispute, expected_version=expected_version)

    async def _broadcast(self, dispute: Dispute, change: StatusChange | None) -> None:
        payload = dispute_payload(dispute)
        if change is not None:
            payload["change"] = {
                "from_status": change.from_status.value,
                "to_status": change.to_status.value,
                "reason": change.reason,
            }
        try:
            await self._gateway.emit(EventType.DISPUTE_UPDATED, payload)
        except Exception:
            logger.exception("dispute.broadcast_failed", dispute_id=dispute.id)
