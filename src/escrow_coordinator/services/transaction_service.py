"""Transaction Service: two-party escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repository (optimistic, versioned writes)
    - Event gateway (transaction.updated + timeline.update)

Every transition runs under a per-transaction lock, so two callers racing on
the same transaction are serialized and the second one sees the first one's
result. Across processes the versioned write decides, and the loser re-reads
and is checked again. Checks run in a fixed order: membership/role first (wrong_role),
then status (wrong_status). A refused transition mutates nothing.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from escrow_coordinator.config import get_settings
from escrow_coordinator.domain.enums import (
    EventType,
    ResolutionAction,
    TransactionAction,
    TransactionStatus,
    TransitionFailure,
)
from escrow_coordinator.domain.exceptions import (
    AlreadyJoinedError,
    ConcurrencyConflictError,
    TransactionNotFoundError,
    TransitionError,
)
from escrow_coordinator.domain.models import Transaction, new_id
from escrow_coordinator.domain.state_machine import (
    ACTION_ROLES,
    SYSTEM_ACTIONS,
    can_fire,
    next_transaction_status,
)
from escrow_coordinator.infrastructure.locks import KeyedLock
from escrow_coordinator.logging_config import get_logger
from escrow_coordinator.schemas.transaction import TimelineEntry, transaction_payload

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from escrow_coordinator.domain.ports import Clock, EventGateway, Repository
    from escrow_coordinator.schemas.transaction import CreateTransactionRequest

logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"

_CENTS = Decimal("0.01")

# Attempts at a versioned write before a conflict is surfaced to the caller.
_WRITE_ATTEMPTS = 3

# Timestamp stamped on the record when an action lands.
_STAMPS: dict[TransactionAction, str] = {
    TransactionAction.MAKE_PAYMENT: "paid_at",
    TransactionAction.CONFIRM_SHIPMENT: "shipped_at",
    TransactionAction.CONFIRM_RECEIPT: "completed_at",
    TransactionAction.RELEASE_PAYMENT: "completed_at",
    TransactionAction.RAISE_DISPUTE: "disputed_at",
    TransactionAction.CANCEL: "cancelled_at",
    TransactionAction.REFUND: "cancelled_at",
}

# How a dispute outcome settles the disputed transaction.
RESOLUTION_ACTIONS: dict[ResolutionAction, TransactionAction | None] = {
    ResolutionAction.RELEASE_PAYMENT: TransactionAction.RELEASE_PAYMENT,
    ResolutionAction.REFUND_PARTIAL: TransactionAction.RELEASE_PAYMENT,
    ResolutionAction.REFUND_FULL: TransactionAction.REFUND,
    ResolutionAction.NO_ACTION: None,
}


class TransactionService:
    """Manages the escrow transaction lifecycle."""

    def __init__(
        self,
        repository: Repository,
        gateway: EventGateway,
        clock: Clock,
        locks: KeyedLock | None = None,
        fee_percent: float | None = None,
        default_currency: str | None = None,
    ) -> None:
        settings = get_settings()
        self._repository = repository
        self._gateway = gateway
        self._clock = clock
        self._locks = locks or KeyedLock()
        self._fee_percent = Decimal(
            str(fee_percent if fee_percent is not None else settings.escrow_fee_percent)
        )
        self._default_currency = default_currency or settings.default_currency

    def lock(self, transaction_id: str) -> AbstractAsyncContextManager[None]:
        """Hold the per-transaction lock (used by callers composing several steps)."""
        return self._locks.hold(transaction_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_transaction(self, request: CreateTransactionRequest) -> Transaction:
        """Open a transaction in PENDING with the creator as its only participant."""
        now = self._clock.now()
        fee = (request.price * self._fee_percent / 100).quantize(_CENTS, rounding=ROUND_HALF_UP)
        transaction = Transaction(
            id=new_id(),
            creator_id=request.creator_id,
            creator_role=request.creator_role,
            description=request.description,
            price=request.price,
            fee=fee,
            total=request.price + fee,
            currency=request.currency or self._default_currency,
            use_courier=request.use_courier,
            created_at=now,
            updated_at=now,
        )
        transaction = await self._repository.save_transaction(transaction)
        await self._broadcast(EventType.TRANSACTION_UPDATED, transaction_payload(transaction))

        logger.info(
            "transaction.created",
            transaction_id=transaction.id,
            creator_role=str(transaction.creator_role),
            total=str(transaction.total),
        )
        return transaction

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self, transaction_id: str, actor_id: str, action: TransactionAction | str
    ) -> Transaction:
        """Apply a participant action to a transaction.

        Raises:
            TransactionNotFoundError: If the transaction does not exist.
            TransitionError: If the actor or the current status does not allow it.
        """
        async with self._locks.hold(transaction_id):
            return await self.transition_while_locked(transaction_id, actor_id, action)

    async def join(self, transaction_id: str, user_id: str) -> Transaction:
        """Claim the counterparty slot. Exactly one caller can succeed."""
        return await self.transition(transaction_id, user_id, TransactionAction.JOIN)

    async def transition_while_locked(
        self, transaction_id: str, actor_id: str, action: TransactionAction | str
    ) -> Transaction:
        """Same as transition(); the caller must already hold lock(transaction_id)."""
        action = self._parse_action(transaction_id, action)
        return await self._load_and_apply(transaction_id, actor_id, action, check_actor=True)

    async def restore_while_locked(
        self, current: Transaction, previous: Transaction
    ) -> Transaction:
        """Write back the state a transaction had before a step whose follow-up failed.

        The caller must hold lock(transaction_id). The write is versioned
        against ``current``, so a record changed in the meantime is left alone
        (ConcurrencyConflictError).
        """
        restored = previous.copy()
        restored.version = current.version + 1
        restored.updated_at = self._clock.now()
        saved = await self._repository.save_transaction(
            restored, expected_version=current.version
        )
        await self._broadcast(EventType.TRANSACTION_UPDATED, transaction_payload(saved))
        logger.warning(
            "transaction.restored",
            transaction_id=saved.id,
            from_status=current.status.value,
            to_status=saved.status.value,
            version=saved.version,
        )
        return saved

    async def apply_resolution(
        self, transaction_id: str, resolution: ResolutionAction
    ) -> Transaction | None:
        """Settle a disputed transaction according to a dispute outcome.

        Returns None when the resolution leaves the transaction untouched.
        """
        action = RESOLUTION_ACTIONS[resolution]
        if action is None:
            logger.info(
                "transaction.resolution_no_action",
                transaction_id=transaction_id,
                resolution=str(resolution),
            )
            return None
        async with self._locks.hold(transaction_id):
            return await self._load_and_apply(
                transaction_id, SYSTEM_ACTOR, action, check_actor=False
            )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> Transaction:
        return await self._get_or_raise(transaction_id)

    async def list_for_participant(self, user_id: str) -> list[Transaction]:
        return await self._repository.list_transactions_by_participant(user_id)

    async def allowed_actions(self, transaction_id: str, actor_id: str) -> list[TransactionAction]:
        """Actions the actor could successfully request right now."""
        transaction = await self._get_or_raise(transaction_id)
        role = transaction.role_of(actor_id)
        status = transaction.status.value
        if role is None:
            if transaction.counterparty_id is None and can_fire(
                status, transaction.use_courier, TransactionAction.JOIN
            ):
                return [TransactionAction.JOIN]
            return []

        allowed = [
            action
            for action, required in ACTION_ROLES.items()
            if required in (None, role) and can_fire(status, transaction.use_courier, action)
        ]
        if transaction.counterparty_id is not None and can_fire(
            status, transaction.use_courier, TransactionAction.RAISE_DISPUTE
        ):
            allowed.append(TransactionAction.RAISE_DISPUTE)
        return allowed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _broadcast(self, event_type: EventType, payload: dict) -> None:
        """Publish after a committed write; a gateway failure cannot undo the write."""
        try:
            await self._gateway.emit(event_type, payload)
        except Exception:
            logger.exception("transaction.broadcast_failed", event_type=str(event_type))

    async def _get_or_raise(self, transaction_id: str) -> Transaction:
        transaction = await self._repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    @staticmethod
    def _parse_action(transaction_id: str, action: TransactionAction | str) -> TransactionAction:
        try:
            return TransactionAction(action)
        except ValueError as err:
            raise TransitionError(
                TransitionFailure.WRONG_STATUS,
                transaction_id,
                str(action),
                detail="unknown action",
            ) from err

    @staticmethod
    def _check_actor(transaction: Transaction, actor_id: str, action: TransactionAction) -> None:
        """Membership and role checks. Raises TransitionError(wrong_role | already_joined)."""
        if action is TransactionAction.JOIN:
            if actor_id == transaction.creator_id:
                raise TransitionError(
                    TransitionFailure.WRONG_ROLE,
                    transaction.id,
                    action,
                    detail="the creator cannot join their own transaction",
                )
            if transaction.counterparty_id is not None:
                raise AlreadyJoinedError(transaction.id)
            return

        if action in SYSTEM_ACTIONS:
            raise TransitionError(
                TransitionFailure.WRONG_ROLE,
                transaction.id,
                action,
                detail="only a dispute resolution can settle a disputed transaction",
            )

        role = transaction.role_of(actor_id)
        if role is None:
            raise TransitionError(
                TransitionFailure.WRONG_ROLE,
                transaction.id,
                action,
                detail="actor is not a participant",
            )
        if action is TransactionAction.RAISE_DISPUTE:
            if transaction.counterparty_id is None:
                raise TransitionError(
                    TransitionFailure.WRONG_STATUS,
                    transaction.id,
                    action,
                    detail="no counterparty has joined yet",
                )
            return

        required = ACTION_ROLES[action]
        if required is not None and role is not required:
            raise TransitionError(
                TransitionFailure.WRONG_ROLE,
                transaction.id,
                action,
                detail=f"requires {required}, actor is {role}",
            )

    async def _load_and_apply(
        self,
        transaction_id: str,
        actor_id: str,
        action: TransactionAction,
        check_actor: bool,
    ) -> Transaction:
        """Read, check, and write; start over from a fresh read on a lost write.

        The KeyedLock only serializes callers in this process. Another process
        can win the versioned write, so the loser re-reads and re-runs every
        check: a lost join becomes already_joined, a lost step wrong_status.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(_WRITE_ATTEMPTS),
            retry=retry_if_exception_type(ConcurrencyConflictError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "transaction.write_conflict_retry",
                        transaction_id=transaction_id,
                        action=action.value,
                        attempt=attempt.retry_state.attempt_number,
                    )
                transaction = await self._get_or_raise(transaction_id)
                if check_actor:
                    self._check_actor(transaction, actor_id, action)
                saved = await self._apply(transaction, actor_id, action)
        return saved

    async def _apply(
        self, transaction: Transaction, actor_id: str, action: TransactionAction
    ) -> Transaction:
        """Validate against the state machine, then persist and broadcast."""
        previous = transaction.status
        try:
            new_status = TransactionStatus(
                next_transaction_status(previous.value, transaction.use_courier, action)
            )
        except TransitionNotAllowed as err:
            raise TransitionError(
                TransitionFailure.WRONG_STATUS,
                transaction.id,
                action,
                detail=f"not allowed from {previous}",
            ) from err

        now = self._clock.now()
        updated = transaction.copy()
        updated.status = new_status
        updated.updated_at = now
        updated.version = transaction.version + 1
        if action is TransactionAction.JOIN:
            updated.counterparty_id = actor_id
        stamp = _STAMPS.get(action)
        if stamp is not None:
            setattr(updated, stamp, now)

        saved = await self._repository.save_transaction(
            updated, expected_version=transaction.version
        )

        await self._broadcast(EventType.TRANSACTION_UPDATED, transaction_payload(saved))
        timeline = TimelineEntry(
            transaction_id=saved.id,
            action=action.value,
            actor_id=actor_id,
            from_status=previous.value,
            to_status=new_status.value,
            at=now,
        )
        await self._broadcast(EventType.TIMELINE_UPDATE, timeline.model_dump(mode="json"))

        logger.info(
            "transaction.transitioned",
            transaction_id=saved.id,
            action=action.value,
            actor_id=actor_id,
            from_status=previous.value,
            to_status=new_status.value,
            version=saved.version,
        )
        return saved
