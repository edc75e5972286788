"""Pydantic schemas for transaction and dispute requests and event payloads.

Requests validate caller input before it reaches the services. Payloads
serialize domain records (from_attributes) into the JSON-safe dicts that
go out on the event gateway.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - needed at runtime by pydantic
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_coordinator.domain.enums import (
    DisputePriority,
    DisputeStatus,
    DisputeType,
    ParticipantRole,
    ResolutionAction,
    TransactionStatus,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateTransactionRequest(BaseModel):
    """Input for opening a new escrow transaction."""

    creator_id: str = Field(..., min_length=1, max_length=64)
    creator_role: ParticipantRole = Field(
        ...,
        description="Role of the creator; the counterparty takes the other one",
    )
    description: str = Field(
        ...,
        min_length=3,
        max_length=5000,
        description="What is being traded",
        examples=["Used road bike, 56cm frame"],
    )
    price: Decimal = Field(..., gt=0, decimal_places=2, examples=[Decimal("250.00")])
    currency: str | None = Field(
        default=None,
        pattern=r"^[A-Z]{3}$",
        description="ISO 4217 code; the configured default when omitted",
    )
    use_courier: bool = Field(
        default=True,
        description="Ship by courier (delivery-details steps) or hand over in person",
    )


# ---------------------------------------------------------------------------
# Event Payloads
# ---------------------------------------------------------------------------


class TransactionPayload(BaseModel):
    """Full transaction record as broadcast on transaction.updated."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    creator_id: str
    creator_role: ParticipantRole
    counterparty_id: str | None
    buyer_id: str | None
    seller_id: str | None
    description: str
    price: Decimal
    fee: Decimal
    total: Decimal
    currency: str
    use_courier: bool
    status: TransactionStatus
    version: int
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None
    shipped_at: datetime | None
    completed_at: datetime | None
    disputed_at: datetime | None
    cancelled_at: datetime | None


class DisputePayload(BaseModel):
    """Dispute record as broadcast on dispute.updated."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    raiser_id: str
    accused_id: str
    dispute_type: DisputeType
    reason: str
    priority: DisputePriority
    status: DisputeStatus
    assigned_admin_id: str | None
    resolution: ResolutionAction | None
    resolution_proposed_by: str | None
    resolution_accepted_by: list[str]
    version: int
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None

    @field_validator("resolution_accepted_by", mode="before")
    @classmethod
    def _sorted_ids(cls, value: object) -> object:
        if isinstance(value, (set, frozenset)):
            return sorted(value)
        return value


class TimelineEntry(BaseModel):
    """One step in a transaction's history, broadcast on timeline.update."""

    transaction_id: str
    action: str
    actor_id: str
    from_status: str
    to_status: str
    at: datetime


def transaction_payload(transaction: object) -> dict:
    return TransactionPayload.model_validate(transaction).model_dump(mode="json")


def dispute_payload(dispute: object) -> dict:
    return DisputePayload.model_validate(dispute).model_dump(mode="json")
