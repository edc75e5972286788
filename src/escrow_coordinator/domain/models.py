"""Domain records for transactions, disputes, and admin capacity.

Plain dataclasses so the state machine, SLA calculator, and workflow engine
can be exercised without a database. Repositories map these to and from
their storage representation and always hand out copies.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from escrow_coordinator.domain.enums import (
    AdminAvailability,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    ParticipantRole,
    ResolutionAction,
    TransactionStatus,
)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Transaction:
    """An escrow trade between a creator and (once joined) a counterparty."""

    id: str
    creator_id: str
    creator_role: ParticipantRole
    description: str
    price: Decimal
    fee: Decimal
    total: Decimal
    currency: str
    use_courier: bool
    created_at: datetime
    updated_at: datetime
    status: TransactionStatus = TransactionStatus.PENDING
    counterparty_id: str | None = None
    version: int = 0
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    completed_at: datetime | None = None
    disputed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def counterparty_role(self) -> ParticipantRole:
        return self.creator_role.opposite

    @property
    def buyer_id(self) -> str | None:
        if self.creator_role is ParticipantRole.BUYER:
            return self.creator_id
        return self.counterparty_id

    @property
    def seller_id(self) -> str | None:
        if self.creator_role is ParticipantRole.SELLER:
            return self.creator_id
        return self.counterparty_id

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.creator_id, self.counterparty_id)

    def role_of(self, user_id: str) -> ParticipantRole | None:
        """Return the participant's role, or None for outsiders."""
        if user_id == self.creator_id:
            return self.creator_role
        if self.counterparty_id is not None and user_id == self.counterparty_id:
            return self.counterparty_role
        return None

    def other_party(self, user_id: str) -> str | None:
        if user_id == self.creator_id:
            return self.counterparty_id
        if user_id == self.counterparty_id:
            return self.creator_id
        return None

    def copy(self) -> Transaction:
        return copy.deepcopy(self)


@dataclass
class Dispute:
    """A dispute raised by one transaction participant against the other."""

    id: str
    transaction_id: str
    raiser_id: str
    accused_id: str
    dispute_type: DisputeType
    reason: str
    created_at: datetime
    updated_at: datetime
    priority: DisputePriority = DisputePriority.MEDIUM
    status: DisputeStatus = DisputeStatus.OPEN
    assigned_admin_id: str | None = None
    resolution: ResolutionAction | None = None
    resolution_proposed_by: str | None = None
    resolution_accepted_by: set[str] = field(default_factory=set)
    resolved_at: datetime | None = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def resolution_accepted(self) -> bool:
        """True once both parties accepted the recorded resolution."""
        if self.resolution is None:
            return False
        return {self.raiser_id, self.accused_id} <= self.resolution_accepted_by

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.raiser_id, self.accused_id)

    def copy(self) -> Dispute:
        return copy.deepcopy(self)


@dataclass
class AdminWorkload:
    """Capacity and skills of one dispute-handling admin."""

    admin_id: str
    max_load: int
    name: str = ""
    current_load: int = 0
    specialties: list[str] = field(default_factory=list)
    availability: AdminAvailability = AdminAvailability.ONLINE

    @property
    def has_capacity(self) -> bool:
        return self.current_load < self.max_load

    def handles(self, dispute_type: str) -> bool:
        wanted = str(dispute_type).upper()
        return any(s.upper() == wanted for s in self.specialties)

    def copy(self) -> AdminWorkload:
        return copy.deepcopy(self)
