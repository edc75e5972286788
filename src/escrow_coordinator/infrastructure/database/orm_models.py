"""SQLAlchemy 2.0 ORM models for the escrow coordinator.

Three tables:
    1. escrow_transactions: Two-party escrow trades and their lifecycle status.
    2. disputes: Disputes raised against a transaction.
    3. admin_workloads: Dispute-handling admins and their open-dispute load.

Design decisions:
    - String UUIDs as primary keys so the same schema runs on Postgres and SQLite.
    - Decimal for money (no floating point rounding errors).
    - JSON columns (JSONB on Postgres) for small sets: accepted-by, specialties.
    - CHECK constraints on status and role columns to reject invalid enum values.
    - An integer version column on mutable records for optimistic concurrency.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from escrow_coordinator.domain.enums import (
    DisputePriority,
    DisputeStatus,
    DisputeType,
    TransactionStatus,
)

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def _in_clause(column: str, values: list[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. escrow_transactions
# ---------------------------------------------------------------------------
class TransactionRow(Base):
    """An escrow trade between a creator and a counterparty."""

    __tablename__ = "escrow_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # --- Participants ---
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    creator_role: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="BUYER or SELLER; the counterparty holds the other role",
    )
    counterparty_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Set exactly once, when the counterparty joins",
    )

    # --- Terms ---
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    use_courier: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        comment="Current lifecycle state (guarded by TransactionStateMachine)",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            _in_clause("status", [s.value for s in TransactionStatus]),
            name="ck_transaction_valid_status",
        ),
        CheckConstraint(
            "creator_role IN ('BUYER', 'SELLER')",
            name="ck_transaction_valid_role",
        ),
        CheckConstraint("price > 0", name="ck_transaction_positive_price"),
        CheckConstraint("fee >= 0", name="ck_transaction_non_negative_fee"),
        Index("idx_transaction_status", "status"),
        Index("idx_transaction_creator", "creator_id"),
        Index("idx_transaction_counterparty", "counterparty_id"),
    )

    def __repr__(self) -> str:
        return f"<TransactionRow id={self.id} status={self.status} v={self.version}>"


# ---------------------------------------------------------------------------
# 2. disputes
# ---------------------------------------------------------------------------
class DisputeRow(Base):
    """A dispute between the two participants of a transaction."""

    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("escrow_transactions.id", ondelete="CASCADE"),
        nullable=False,
    )

    # --- Parties ---
    raiser_id: Mapped[str] = mapped_column(String(64), nullable=False)
    accused_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Classification ---
    dispute_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default=DisputePriority.MEDIUM.value
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DisputeStatus.OPEN.value,
        comment="Current dispute state (guarded by DisputeStateMachine)",
    )
    assigned_admin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Resolution ---
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolution_proposed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution_accepted_by: Mapped[list] = mapped_column(
        JsonColumn,
        nullable=False,
        default=list,
        comment="User ids that accepted the recorded resolution",
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            _in_clause("status", [s.value for s in DisputeStatus]),
            name="ck_dispute_valid_status",
        ),
        CheckConstraint(
            _in_clause("priority", [p.value for p in DisputePriority]),
            name="ck_dispute_valid_priority",
        ),
        CheckConstraint(
            _in_clause("dispute_type", [t.value for t in DisputeType]),
            name="ck_dispute_valid_type",
        ),
        Index("idx_dispute_transaction", "transaction_id"),
        Index("idx_dispute_status", "status"),
        Index("idx_dispute_raiser", "raiser_id"),
        Index("idx_dispute_accused", "accused_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<DisputeRow id={self.id} tx={self.transaction_id} "
            f"status={self.status} priority={self.priority}>"
        )


# ---------------------------------------------------------------------------
# 3. admin_workloads
# ---------------------------------------------------------------------------
class AdminWorkloadRow(Base):
    """A dispute-handling admin. Row order (position) is the directory order."""

    __tablename__ = "admin_workloads"

    admin_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_load: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_load: Mapped[int] = mapped_column(Integer, nullable=False)
    specialties: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    availability: Mapped[str] = mapped_column(String(10), nullable=False, default="ONLINE")

    __table_args__ = (
        CheckConstraint("current_load >= 0", name="ck_admin_non_negative_load"),
        CheckConstraint(
            "availability IN ('ONLINE', 'AWAY', 'OFFLINE')",
            name="ck_admin_valid_availability",
        ),
        Index("idx_admin_position", "position"),
    )

    def __repr__(self) -> str:
        return f"<AdminWorkloadRow id={self.admin_id} load={self.current_load}/{self.max_load}>"
