"""Domain exceptions for the escrow coordinator.

These exceptions are framework-agnostic and represent business rule violations.
Callers of the services catch them; the workflow engine logs them per action.
"""

from escrow_coordinator.domain.enums import TransitionFailure


class EscrowCoordinatorError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_COORDINATOR_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Transition Errors ---


class TransitionError(EscrowCoordinatorError):
    """Raised when a transaction transition is refused.

    Recoverable by the caller: no state is mutated before it is raised.
    """

    def __init__(
        self,
        reason: TransitionFailure,
        transaction_id: str,
        action: str,
        detail: str = "",
    ) -> None:
        message = f"Transition '{action}' refused for transaction {transaction_id}: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message=message, code="TRANSITION_REFUSED")
        self.reason = reason
        self.transaction_id = transaction_id
        self.action = action


class AlreadyJoinedError(TransitionError):
    """Raised when the counterparty slot of a transaction is already taken."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            reason=TransitionFailure.ALREADY_JOINED,
            transaction_id=transaction_id,
            action="join",
            detail="transaction already has a counterparty",
        )


class InvalidDisputeTransitionError(EscrowCoordinatorError):
    """Raised when a dispute status change is not on the dispute graph."""

    def __init__(self, current_status: str, attempted_status: str) -> None:
        super().__init__(
            message=f"Invalid dispute transition: {current_status} -> {attempted_status}",
            code="INVALID_DISPUTE_TRANSITION",
        )
        self.current_status = current_status
        self.attempted_status = attempted_status


# --- Lookup Errors ---


class TransactionNotFoundError(EscrowCoordinatorError):
    """Raised when a transaction ID does not exist."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Transaction not found: {transaction_id}",
            code="TRANSACTION_NOT_FOUND",
        )
        self.transaction_id = transaction_id


class DisputeNotFoundError(EscrowCoordinatorError):
    """Raised when a dispute ID does not exist."""

    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute not found: {dispute_id}",
            code="DISPUTE_NOT_FOUND",
        )
        self.dispute_id = dispute_id


# --- Dispute Errors ---


class ActiveDisputeExistsError(EscrowCoordinatorError):
    """Raised when a transaction already has an OPEN or IN_REVIEW dispute."""

    def __init__(self, transaction_id: str, dispute_id: str) -> None:
        super().__init__(
            message=f"Transaction {transaction_id} already has active dispute {dispute_id}",
            code="ACTIVE_DISPUTE_EXISTS",
        )
        self.transaction_id = transaction_id
        self.dispute_id = dispute_id


class NotADisputePartyError(EscrowCoordinatorError):
    """Raised when a user acts on a dispute they are not a party to."""

    def __init__(self, dispute_id: str, user_id: str) -> None:
        super().__init__(
            message=f"User {user_id} is not a party to dispute {dispute_id}",
            code="NOT_A_DISPUTE_PARTY",
        )


class ResolutionMissingError(EscrowCoordinatorError):
    """Raised when a resolution is accepted before one has been proposed."""

    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"No resolution has been proposed for dispute {dispute_id}",
            code="RESOLUTION_MISSING",
        )


# --- Storage Errors ---


class ConcurrencyConflictError(EscrowCoordinatorError):
    """Raised when a save finds a newer version than the one it read."""

    def __init__(self, entity: str, entity_id: str, expected_version: int) -> None:
        super().__init__(
            message=(
                f"{entity} {entity_id} was modified concurrently "
                f"(expected version {expected_version})"
            ),
            code="CONCURRENCY_CONFLICT",
        )
        self.entity_id = entity_id
        self.expected_version = expected_version


class RepositoryUnavailableError(EscrowCoordinatorError):
    """Raised when the backing store cannot be reached."""

    def __init__(self, message: str = "Repository unavailable") -> None:
        super().__init__(message=message, code="REPOSITORY_UNAVAILABLE")


# --- Runtime Errors ---


class DependencyUnavailableError(EscrowCoordinatorError):
    """Raised at startup when a required backing service cannot be reached."""

    def __init__(self, dependency: str, reason: str) -> None:
        super().__init__(
            message=f"{dependency} unavailable: {reason}",
            code="DEPENDENCY_UNAVAILABLE",
        )
        self.dependency = dependency
