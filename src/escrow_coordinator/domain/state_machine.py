"""Transaction and Dispute State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the services or the workflow engine request, an illegal
transition (e.g., PENDING -> COMPLETED) raises TransitionNotAllowed.

The machines are instantiated per-record from the persisted status and only
validate; the services write the resulting status back.

Transaction transition table ([courier] / [pickup] branch on use_courier):
    PENDING -> ACTIVE                                   (join)
    ACTIVE -> WAITING_FOR_DELIVERY_DETAILS              (request_delivery_details) [courier]
    ACTIVE | WAITING_FOR_DELIVERY_DETAILS
        -> WAITING_FOR_PAYMENT                          (provide_delivery_details) [courier]
        -> DELIVERY_DETAILS_IMPORTED                    (import_delivery_details) [courier]
    WAITING_FOR_PAYMENT | DELIVERY_DETAILS_IMPORTED
        -> WAITING_FOR_SHIPMENT                         (make_payment) [courier]
    ACTIVE | WAITING_FOR_PAYMENT -> PAYMENT_MADE        (make_payment) [pickup]
    WAITING_FOR_SHIPMENT -> WAITING_FOR_BUYER_CONFIRMATION  (confirm_shipment) [courier]
    PAYMENT_MADE -> SHIPMENT_CONFIRMED                  (confirm_shipment) [pickup]
    WAITING_FOR_BUYER_CONFIRMATION | SHIPMENT_CONFIRMED
        -> COMPLETED                                    (confirm_receipt)
    any open status -> CANCELLED                        (cancel)
    any open status but PENDING -> DISPUTED             (raise_dispute)
    DISPUTED -> COMPLETED                               (release_payment)
    DISPUTED -> CANCELLED                               (refund)

Dispute transition table:
    OPEN                            -> IN_REVIEW   (escalate)
    OPEN | IN_REVIEW                -> RESOLVED    (resolve)
    OPEN | IN_REVIEW | RESOLVED     -> CLOSED      (close)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from escrow_coordinator.domain.enums import (
    DisputeStatus,
    ParticipantRole,
    TransactionAction,
)

# Role required to request each participant action; None means any participant.
ACTION_ROLES: dict[TransactionAction, ParticipantRole | None] = {
    TransactionAction.REQUEST_DELIVERY_DETAILS: ParticipantRole.SELLER,
    TransactionAction.PROVIDE_DELIVERY_DETAILS: ParticipantRole.BUYER,
    TransactionAction.IMPORT_DELIVERY_DETAILS: ParticipantRole.BUYER,
    TransactionAction.MAKE_PAYMENT: ParticipantRole.BUYER,
    TransactionAction.CONFIRM_SHIPMENT: ParticipantRole.SELLER,
    TransactionAction.CONFIRM_RECEIPT: ParticipantRole.BUYER,
    TransactionAction.CANCEL: None,
}

# Actions only the dispute process may fire.
SYSTEM_ACTIONS = frozenset({TransactionAction.RELEASE_PAYMENT, TransactionAction.REFUND})


class TransactionStateMachine(StateMachine):
    """State machine that guards escrow transaction lifecycle transitions.

    Usage:
        sm = TransactionStateMachine("WAITING_FOR_PAYMENT", use_courier=True)
        sm.make_payment()  # transitions to WAITING_FOR_SHIPMENT
        sm.status          # "WAITING_FOR_SHIPMENT"
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    ACTIVE = State("ACTIVE")
    WAITING_FOR_DELIVERY_DETAILS = State("WAITING_FOR_DELIVERY_DETAILS")
    DELIVERY_DETAILS_IMPORTED = State("DELIVERY_DETAILS_IMPORTED")
    WAITING_FOR_PAYMENT = State("WAITING_FOR_PAYMENT")
    PAYMENT_MADE = State("PAYMENT_MADE")
    WAITING_FOR_SHIPMENT = State("WAITING_FOR_SHIPMENT")
    SHIPMENT_CONFIRMED = State("SHIPMENT_CONFIRMED")
    WAITING_FOR_BUYER_CONFIRMATION = State("WAITING_FOR_BUYER_CONFIRMATION")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    DISPUTED = State("DISPUTED")

    # --- Events / Transitions ---

    # Counterparty claims the open slot
    join = PENDING.to(ACTIVE)

    # Delivery details (courier only)
    request_delivery_details = ACTIVE.to(
        WAITING_FOR_DELIVERY_DETAILS, cond="ships_by_courier"
    )
    provide_delivery_details = ACTIVE.to(
        WAITING_FOR_PAYMENT, cond="ships_by_courier"
    ) | WAITING_FOR_DELIVERY_DETAILS.to(WAITING_FOR_PAYMENT, cond="ships_by_courier")
    import_delivery_details = ACTIVE.to(
        DELIVERY_DETAILS_IMPORTED, cond="ships_by_courier"
    ) | WAITING_FOR_DELIVERY_DETAILS.to(DELIVERY_DETAILS_IMPORTED, cond="ships_by_courier")

    # Payment
    make_payment = (
        WAITING_FOR_PAYMENT.to(WAITING_FOR_SHIPMENT, cond="ships_by_courier")
        | DELIVERY_DETAILS_IMPORTED.to(WAITING_FOR_SHIPMENT, cond="ships_by_courier")
        | ACTIVE.to(PAYMENT_MADE, unless="ships_by_courier")
        | WAITING_FOR_PAYMENT.to(PAYMENT_MADE, unless="ships_by_courier")
    )

    # Shipment (courier) or hand-over (pickup)
    confirm_shipment = WAITING_FOR_SHIPMENT.to(
        WAITING_FOR_BUYER_CONFIRMATION, cond="ships_by_courier"
    ) | PAYMENT_MADE.to(SHIPMENT_CONFIRMED, unless="ships_by_courier")

    # Settlement
    confirm_receipt = WAITING_FOR_BUYER_CONFIRMATION.to(COMPLETED) | SHIPMENT_CONFIRMED.to(
        COMPLETED
    )

    # Side entries
    cancel = (
        PENDING.to(CANCELLED)
        | ACTIVE.to(CANCELLED)
        | WAITING_FOR_DELIVERY_DETAILS.to(CANCELLED)
        | DELIVERY_DETAILS_IMPORTED.to(CANCELLED)
        | WAITING_FOR_PAYMENT.to(CANCELLED)
        | PAYMENT_MADE.to(CANCELLED)
        | WAITING_FOR_SHIPMENT.to(CANCELLED)
        | SHIPMENT_CONFIRMED.to(CANCELLED)
        | WAITING_FOR_BUYER_CONFIRMATION.to(CANCELLED)
    )
    raise_dispute = (
        ACTIVE.to(DISPUTED)
        | WAITING_FOR_DELIVERY_DETAILS.to(DISPUTED)
        | DELIVERY_DETAILS_IMPORTED.to(DISPUTED)
        | WAITING_FOR_PAYMENT.to(DISPUTED)
        | PAYMENT_MADE.to(DISPUTED)
        | WAITING_FOR_SHIPMENT.to(DISPUTED)
        | SHIPMENT_CONFIRMED.to(DISPUTED)
        | WAITING_FOR_BUYER_CONFIRMATION.to(DISPUTED)
    )

    # Dispute outcomes
    release_payment = DISPUTED.to(COMPLETED)
    refund = DISPUTED.to(CANCELLED)

    def __init__(self, current_status: str = "PENDING", use_courier: bool = False) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current TransactionStatus value.
            use_courier: Whether the trade ships by courier (enables the
                delivery-details steps) or is collected in person.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        self._use_courier = use_courier
        super().__init__(start_value=current_status)

    def ships_by_courier(self) -> bool:
        return self._use_courier

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches TransactionStatus)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return event names defined from the current state (conditions not evaluated)."""
        return [event.id for event in self.allowed_events]


class DisputeStateMachine(StateMachine):
    """State machine that guards dispute status changes."""

    OPEN = State("OPEN", initial=True)
    IN_REVIEW = State("IN_REVIEW")
    RESOLVED = State("RESOLVED")
    CLOSED = State("CLOSED", final=True)

    escalate = OPEN.to(IN_REVIEW)
    resolve = OPEN.to(RESOLVED) | IN_REVIEW.to(RESOLVED)
    close = OPEN.to(CLOSED) | IN_REVIEW.to(CLOSED) | RESOLVED.to(CLOSED)

    def __init__(self, current_status: str = "OPEN") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        return str(self.current_state.value)


_DISPUTE_EVENTS: dict[DisputeStatus, str] = {
    DisputeStatus.IN_REVIEW: "escalate",
    DisputeStatus.RESOLVED: "resolve",
    DisputeStatus.CLOSED: "close",
}


def next_transaction_status(current_status: str, use_courier: bool, action: str) -> str:
    """Validate a transaction transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns the
    resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal from current_status.
        ValueError: If the status or action name is unknown.
    """
    sm = TransactionStateMachine(current_status=current_status, use_courier=use_courier)
    try:
        event = TransactionAction(action)
    except ValueError as err:
        raise ValueError(
            f"Unknown action '{action}'. "
            f"Events defined from {current_status}: {sm.get_allowed_events()}"
        ) from err
    sm.send(event.value)
    return sm.status


def can_fire(current_status: str, use_courier: bool, action: str) -> bool:
    """Return True if the action would be accepted from current_status."""
    try:
        next_transaction_status(current_status, use_courier, action)
    except TransitionNotAllowed:
        return False
    return True


def next_dispute_status(current_status: str, target_status: str) -> str:
    """Validate a dispute status change and return the new status.

    Raises:
        TransitionNotAllowed: If target_status is not reachable in one step.
        ValueError: If either status is unknown or the target has no event.
    """
    sm = DisputeStateMachine(current_status=current_status)
    event_name = _DISPUTE_EVENTS.get(DisputeStatus(target_status))
    if event_name is None:
        raise ValueError(f"No dispute event leads to '{target_status}'")
    sm.send(event_name)
    return sm.status
