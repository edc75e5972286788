"""Domain layer: pure business logic with zero framework dependencies."""

from escrow_coordinator.domain.enums import (
    DisputeStatus,
    EventType,
    TransactionAction,
    TransactionStatus,
)
from escrow_coordinator.domain.exceptions import (
    EscrowCoordinatorError,
    TransactionNotFoundError,
    TransitionError,
)
from escrow_coordinator.domain.models import AdminWorkload, Dispute, Transaction
from escrow_coordinator.domain.state_machine import (
    DisputeStateMachine,
    TransactionStateMachine,
    next_dispute_status,
    next_transaction_status,
)

__all__ = [
    "DisputeStatus",
    "EventType",
    "TransactionAction",
    "TransactionStatus",
    "EscrowCoordinatorError",
    "TransactionNotFoundError",
    "TransitionError",
    "AdminWorkload",
    "Dispute",
    "Transaction",
    "DisputeStateMachine",
    "TransactionStateMachine",
    "next_dispute_status",
    "next_transaction_status",
]
