"""SQL adapters for the Repository and AdminDirectory ports.

Each call runs in its own short session (one unit of work per record), maps
ORM rows to domain dataclasses, and never hands ORM objects to callers.
Driver and connection failures surface as RepositoryUnavailableError so the
services and the workflow engine can treat every backend the same way.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from escrow_coordinator.domain.enums import (
    SETTLING_RESOLUTIONS,
    AdminAvailability,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    ParticipantRole,
    ResolutionAction,
    TransactionStatus,
)
from escrow_coordinator.domain.exceptions import (
    ConcurrencyConflictError,
    RepositoryUnavailableError,
)
from escrow_coordinator.domain.models import AdminWorkload, Dispute, Transaction
from escrow_coordinator.infrastructure.database.engine import session_scope
from escrow_coordinator.infrastructure.database.orm_models import (
    AdminWorkloadRow,
    DisputeRow,
    TransactionRow,
)
from escrow_coordinator.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

_ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN.value, DisputeStatus.IN_REVIEW.value)
_SETTLING_RESOLUTIONS = sorted(r.value for r in SETTLING_RESOLUTIONS)


def _utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------
def _transaction_values(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "creator_id": tx.creator_id,
        "creator_role": tx.creator_role.value,
        "counterparty_id": tx.counterparty_id,
        "description": tx.description,
        "price": tx.price,
        "fee": tx.fee,
        "total": tx.total,
        "currency": tx.currency,
        "use_courier": tx.use_courier,
        "status": tx.status.value,
        "version": tx.version,
        "created_at": tx.created_at,
        "updated_at": tx.updated_at,
        "paid_at": tx.paid_at,
        "shipped_at": tx.shipped_at,
        "completed_at": tx.completed_at,
        "disputed_at": tx.disputed_at,
        "cancelled_at": tx.cancelled_at,
    }


def _to_transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        creator_id=row.creator_id,
        creator_role=ParticipantRole(row.creator_role),
        counterparty_id=row.counterparty_id,
        description=row.description,
        price=row.price,
        fee=row.fee,
        total=row.total,
        currency=row.currency,
        use_courier=row.use_courier,
        status=TransactionStatus(row.status),
        version=row.version,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        paid_at=_utc(row.paid_at),
        shipped_at=_utc(row.shipped_at),
        completed_at=_utc(row.completed_at),
        disputed_at=_utc(row.disputed_at),
        cancelled_at=_utc(row.cancelled_at),
    )


def _dispute_values(dispute: Dispute) -> dict[str, Any]:
    return {
        "id": dispute.id,
        "transaction_id": dispute.transaction_id,
        "raiser_id": dispute.raiser_id,
        "accused_id": dispute.accused_id,
        "dispute_type": dispute.dispute_type.value,
        "reason": dispute.reason,
        "priority": dispute.priority.value,
        "status": dispute.status.value,
        "assigned_admin_id": dispute.assigned_admin_id,
        "resolution": dispute.resolution.value if dispute.resolution else None,
        "resolution_proposed_by": dispute.resolution_proposed_by,
        "resolution_accepted_by": sorted(dispute.resolution_accepted_by),
        "version": dispute.version,
        "created_at": dispute.created_at,
        "updated_at": dispute.updated_at,
        "resolved_at": dispute.resolved_at,
    }


def _to_dispute(row: DisputeRow) -> Dispute:
    return Dispute(
        id=row.id,
        transaction_id=row.transaction_id,
        raiser_id=row.raiser_id,
        accused_id=row.accused_id,
        dispute_type=DisputeType(row.dispute_type),
        reason=row.reason,
        priority=DisputePriority(row.priority),
        status=DisputeStatus(row.status),
        assigned_admin_id=row.assigned_admin_id,
        resolution=ResolutionAction(row.resolution) if row.resolution else None,
        resolution_proposed_by=row.resolution_proposed_by,
        resolution_accepted_by=set(row.resolution_accepted_by or ()),
        version=row.version,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        resolved_at=_utc(row.resolved_at),
    )


def _to_admin(row: AdminWorkloadRow) -> AdminWorkload:
    return AdminWorkload(
        admin_id=row.admin_id,
        name=row.name,
        current_load=row.current_load,
        max_load=row.max_load,
        specialties=list(row.specialties or ()),
        availability=AdminAvailability(row.availability),
    )


class _SqlAdapter:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _unit(self) -> AsyncIterator[AsyncSession]:
        """One committed unit of work; backend failures become RepositoryUnavailableError."""
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error("repository.backend_error", error=str(exc))
            raise RepositoryUnavailableError(f"Database unavailable: {exc}") from exc


class SqlRepository(_SqlAdapter):
    """Repository over the escrow_transactions and disputes tables."""

    # --- Transactions ---

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        async with self._unit() as session:
            row = await session.get(TransactionRow, transaction_id)
            return _to_transaction(row) if row else None

    async def list_transactions_by_participant(self, user_id: str) -> list[Transaction]:
        async with self._unit() as session:
            result = await session.execute(
                select(TransactionRow)
                .where(
                    or_(
                        TransactionRow.creator_id == user_id,
                        TransactionRow.counterparty_id == user_id,
                    )
                )
                .order_by(TransactionRow.created_at.desc())
            )
            return [_to_transaction(row) for row in result.scalars().all()]

    async def save_transaction(
        self, transaction: Transaction, expected_version: int | None = None
    ) -> Transaction:
        values = _transaction_values(transaction)
        async with self._unit() as session:
            if expected_version is None:
                await session.merge(TransactionRow(**values))
            else:
                result = await session.execute(
                    update(TransactionRow)
                    .where(
                        TransactionRow.id == transaction.id,
                        TransactionRow.version == expected_version,
                    )
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise ConcurrencyConflictError("Transaction", transaction.id, expected_version)
        return transaction.copy()

    # --- Disputes ---

    async def get_dispute(self, dispute_id: str) -> Dispute | None:
        async with self._unit() as session:
            row = await session.get(DisputeRow, dispute_id)
            return _to_dispute(row) if row else None

    async def get_disputes_by_participant(self, user_id: str) -> list[Dispute]:
        async with self._unit() as session:
            result = await session.execute(
                select(DisputeRow)
                .where(or_(DisputeRow.raiser_id == user_id, DisputeRow.accused_id == user_id))
                .order_by(DisputeRow.created_at.desc())
            )
            return [_to_dispute(row) for row in result.scalars().all()]

    async def get_active_dispute(self, transaction_id: str) -> Dispute | None:
        async with self._unit() as session:
            result = await session.execute(
                select(DisputeRow)
                .where(
                    DisputeRow.transaction_id == transaction_id,
                    DisputeRow.status.in_(_ACTIVE_DISPUTE_STATUSES),
                )
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_dispute(row) if row else None

    async def list_open_disputes(self) -> list[Dispute]:
        async with self._unit() as session:
            result = await session.execute(
                select(DisputeRow)
                .where(DisputeRow.status.in_(_ACTIVE_DISPUTE_STATUSES))
                .order_by(DisputeRow.created_at.asc())
            )
            return [_to_dispute(row) for row in result.scalars().all()]

    async def list_unsettled_resolutions(self) -> list[Dispute]:
        async with self._unit() as session:
            result = await session.execute(
                select(DisputeRow)
                .join(TransactionRow, TransactionRow.id == DisputeRow.transaction_id)
                .where(
                    DisputeRow.status == DisputeStatus.RESOLVED.value,
                    DisputeRow.resolution.in_(_SETTLING_RESOLUTIONS),
                    TransactionRow.status == TransactionStatus.DISPUTED.value,
                )
                .order_by(DisputeRow.created_at.asc())
            )
            return [_to_dispute(row) for row in result.scalars().all()]

    async def count_disputes(self) -> dict[tuple[DisputeStatus, DisputeType], int]:
        async with self._unit() as session:
            result = await session.execute(
                select(DisputeRow.status, DisputeRow.dispute_type, func.count(DisputeRow.id))
                .group_by(DisputeRow.status, DisputeRow.dispute_type)
            )
            return {
                (DisputeStatus(status), DisputeType(dispute_type)): count
                for status, dispute_type, count in result.all()
            }

    async def save_dispute(self, dispute: Dispute, expected_version: int | None = None) -> Dispute:
        values = _dispute_values(dispute)
        async with self._unit() as session:
            if expected_version is None:
                await session.merge(DisputeRow(**values))
            else:
                result = await session.execute(
                    update(DisputeRow)
                    .where(DisputeRow.id == dispute.id, DisputeRow.version == expected_version)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise ConcurrencyConflictError("Dispute", dispute.id, expected_version)
        return dispute.copy()


class SqlAdminDirectory(_SqlAdapter):
    """AdminDirectory over the admin_workloads table, ordered by position."""

    async def list_admins(self) -> list[AdminWorkload]:
        async with self._unit() as session:
            result = await session.execute(
                select(AdminWorkloadRow).order_by(
                    AdminWorkloadRow.position.asc(), AdminWorkloadRow.admin_id.asc()
                )
            )
            return [_to_admin(row) for row in result.scalars().all()]

    async def update_workload(self, admin_id: str, delta: int) -> AdminWorkload | None:
        async with self._unit() as session:
            result = await session.execute(
                select(AdminWorkloadRow)
                .where(AdminWorkloadRow.admin_id == admin_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.current_load = max(0, row.current_load + delta)
            await session.flush()
            return _to_admin(row)

    async def upsert_admin(self, admin: AdminWorkload, position: int = 0) -> None:
        """Insert or replace an admin record (used when seeding the directory)."""
        async with self._unit() as session:
            await session.merge(
                AdminWorkloadRow(
                    admin_id=admin.admin_id,
                    name=admin.name,
                    position=position,
                    current_load=admin.current_load,
                    max_load=admin.max_load,
                    specialties=list(admin.specialties),
                    availability=admin.availability.value,
                )
            )
