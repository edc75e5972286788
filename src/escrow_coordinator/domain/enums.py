"""Domain enumerations for the escrow coordinator.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no pydantic imports).
"""

import enum


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of an escrow transaction.

    The first ten members form the ordered forward path; CANCELLED and
    DISPUTED are side-states reachable from any non-terminal status.
    Transitions are enforced by TransactionStateMachine.
    """

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    WAITING_FOR_DELIVERY_DETAILS = "WAITING_FOR_DELIVERY_DETAILS"
    DELIVERY_DETAILS_IMPORTED = "DELIVERY_DETAILS_IMPORTED"
    WAITING_FOR_PAYMENT = "WAITING_FOR_PAYMENT"
    PAYMENT_MADE = "PAYMENT_MADE"
    WAITING_FOR_SHIPMENT = "WAITING_FOR_SHIPMENT"
    SHIPMENT_CONFIRMED = "SHIPMENT_CONFIRMED"
    WAITING_FOR_BUYER_CONFIRMATION = "WAITING_FOR_BUYER_CONFIRMATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"

    @property
    def index(self) -> int | None:
        """Position on the ordered forward path, None for side-states."""
        try:
            return ORDERED_PATH.index(self)
        except ValueError:
            return None

    @property
    def is_side_state(self) -> bool:
        return self in (TransactionStatus.CANCELLED, TransactionStatus.DISPUTED)

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)


ORDERED_PATH: tuple[TransactionStatus, ...] = (
    TransactionStatus.PENDING,
    TransactionStatus.ACTIVE,
    TransactionStatus.WAITING_FOR_DELIVERY_DETAILS,
    TransactionStatus.DELIVERY_DETAILS_IMPORTED,
    TransactionStatus.WAITING_FOR_PAYMENT,
    TransactionStatus.PAYMENT_MADE,
    TransactionStatus.WAITING_FOR_SHIPMENT,
    TransactionStatus.SHIPMENT_CONFIRMED,
    TransactionStatus.WAITING_FOR_BUYER_CONFIRMATION,
    TransactionStatus.COMPLETED,
)


class ParticipantRole(enum.StrEnum):
    BUYER = "BUYER"
    SELLER = "SELLER"

    @property
    def opposite(self) -> "ParticipantRole":
        if self is ParticipantRole.BUYER:
            return ParticipantRole.SELLER
        return ParticipantRole.BUYER


class TransactionAction(enum.StrEnum):
    """Actions a participant (or the dispute process) can request.

    Values match the event names on TransactionStateMachine.
    """

    JOIN = "join"
    REQUEST_DELIVERY_DETAILS = "request_delivery_details"
    PROVIDE_DELIVERY_DETAILS = "provide_delivery_details"
    IMPORT_DELIVERY_DETAILS = "import_delivery_details"
    MAKE_PAYMENT = "make_payment"
    CONFIRM_SHIPMENT = "confirm_shipment"
    CONFIRM_RECEIPT = "confirm_receipt"
    CANCEL = "cancel"
    RAISE_DISPUTE = "raise_dispute"
    RELEASE_PAYMENT = "release_payment"
    REFUND = "refund"


class TransitionFailure(enum.StrEnum):
    """Reason codes carried by TransitionError."""

    WRONG_ROLE = "wrong_role"
    WRONG_STATUS = "wrong_status"
    ALREADY_JOINED = "already_joined"


class DisputeType(enum.StrEnum):
    PAYMENT = "PAYMENT"
    DELIVERY = "DELIVERY"
    QUALITY = "QUALITY"
    FRAUD = "FRAUD"
    OTHER = "OTHER"


class DisputePriority(enum.StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class DisputeStatus(enum.StrEnum):
    OPEN = "OPEN"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

    @property
    def is_active(self) -> bool:
        """OPEN and IN_REVIEW disputes hold the transaction and admin capacity."""
        return self in (DisputeStatus.OPEN, DisputeStatus.IN_REVIEW)


class ResolutionAction(enum.StrEnum):
    """Outcome of a dispute, applied to the disputed transaction."""

    REFUND_FULL = "REFUND_FULL"
    REFUND_PARTIAL = "REFUND_PARTIAL"
    RELEASE_PAYMENT = "RELEASE_PAYMENT"
    NO_ACTION = "NO_ACTION"


# Outcomes that move money, and so move the transaction out of DISPUTED.
SETTLING_RESOLUTIONS: frozenset[ResolutionAction] = frozenset(
    {
        ResolutionAction.REFUND_FULL,
        ResolutionAction.REFUND_PARTIAL,
        ResolutionAction.RELEASE_PAYMENT,
    }
)


class SLAStatus(enum.StrEnum):
    ON_TIME = "ON_TIME"
    AT_RISK = "AT_RISK"
    OVERDUE = "OVERDUE"


class AdminAvailability(enum.StrEnum):
    ONLINE = "ONLINE"
    AWAY = "AWAY"
    OFFLINE = "OFFLINE"


class ConditionOperator(enum.StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"


class LogicalOperator(enum.StrEnum):
    AND = "AND"
    OR = "OR"


class ActionType(enum.StrEnum):
    """Side effects a workflow rule can fire."""

    AUTO_ESCALATE = "AUTO_ESCALATE"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    ASSIGN_ADMIN = "ASSIGN_ADMIN"
    UPDATE_STATUS = "UPDATE_STATUS"
    SET_PRIORITY = "SET_PRIORITY"
    SEND_EMAIL = "SEND_EMAIL"
    CREATE_TASK = "CREATE_TASK"


class EventType(enum.StrEnum):
    """Topics published on the event gateway."""

    TRANSACTION_UPDATED = "transaction.updated"
    DISPUTE_UPDATED = "dispute.updated"
    TIMELINE_UPDATE = "timeline.update"
    NOTIFICATION_CREATED = "notification.created"
    TASK_CREATED = "task.created"
