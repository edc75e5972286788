"""Tests for the SQL adapters against an in-memory aiosqlite database."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from escrow_coordinator.clock import ManualClock
from escrow_coordinator.domain.enums import (
    AdminAvailability,
    DisputeStatus,
    DisputeType,
    ParticipantRole,
    ResolutionAction,
    TransactionStatus,
)
from escrow_coordinator.domain.exceptions import (
    AlreadyJoinedError,
    ConcurrencyConflictError,
    RepositoryUnavailableError,
)
from escrow_coordinator.domain.models import AdminWorkload, Dispute, Transaction
from escrow_coordinator.infrastructure.database.orm_models import Base
from escrow_coordinator.infrastructure.database.repositories import (
    SqlAdminDirectory,
    SqlRepository,
)
from escrow_coordinator.infrastructure.event_bus import InMemoryEventBus
from escrow_coordinator.schemas.transaction import CreateTransactionRequest
from escrow_coordinator.services.transaction_service import TransactionService

NOW = datetime(2025, 4, 1, 9, 30, tzinfo=UTC)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sql_repository(session_factory) -> SqlRepository:
    return SqlRepository(session_factory)


@pytest.fixture
def sql_directory(session_factory) -> SqlAdminDirectory:
    return SqlAdminDirectory(session_factory)


def _transaction(tx_id: str = "t-1", **overrides) -> Transaction:
    values = {
        "id": tx_id,
        "creator_id": "seller",
        "creator_role": ParticipantRole.SELLER,
        "description": "Mechanical keyboard",
        "price": Decimal("120.00"),
        "fee": Decimal("3.00"),
        "total": Decimal("123.00"),
        "currency": "USD",
        "use_courier": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return Transaction(**values)


def _dispute(dispute_id: str = "d-1", tx_id: str = "t-1", **overrides) -> Dispute:
    values = {
        "id": dispute_id,
        "transaction_id": tx_id,
        "raiser_id": "buyer",
        "accused_id": "seller",
        "dispute_type": DisputeType.QUALITY,
        "reason": "Sticky keys",
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return Dispute(**values)


class TestTransactions:
    @pytest.mark.asyncio
    async def test_round_trip_keeps_money_and_timezones(self, sql_repository) -> None:
        await sql_repository.save_transaction(_transaction(counterparty_id="buyer"))
        stored = await sql_repository.get_transaction("t-1")
        assert stored.price == Decimal("120.00")
        assert stored.total == Decimal("123.00")
        assert stored.created_at == NOW
        assert stored.created_at.tzinfo is not None
        assert stored.status is TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_is_none(self, sql_repository) -> None:
        assert await sql_repository.get_transaction("nope") is None

    @pytest.mark.asyncio
    async def test_versioned_save(self, sql_repository) -> None:
        tx = await sql_repository.save_transaction(_transaction())
        tx.status = TransactionStatus.ACTIVE
        tx.counterparty_id = "buyer"
        tx.version = 1
        await sql_repository.save_transaction(tx, expected_version=0)

        tx.status = TransactionStatus.CANCELLED
        with pytest.raises(ConcurrencyConflictError):
            await sql_repository.save_transaction(tx, expected_version=0)
        assert (await sql_repository.get_transaction("t-1")).status is TransactionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_list_by_participant_newest_first(self, sql_repository) -> None:
        await sql_repository.save_transaction(_transaction("t-old"))
        await sql_repository.save_transaction(
            _transaction("t-new", created_at=NOW + timedelta(hours=1), counterparty_id="buyer")
        )
        assert [t.id for t in await sql_repository.list_transactions_by_participant("seller")] == [
            "t-new",
            "t-old",
        ]
        buyer_side = await sql_repository.list_transactions_by_participant("buyer")
        assert [t.id for t in buyer_side] == ["t-new"]


class TestDisputes:
    @pytest.mark.asyncio
    async def test_round_trip(self, sql_repository) -> None:
        await sql_repository.save_transaction(_transaction())
        await sql_repository.save_dispute(
            _dispute(
                resolution=ResolutionAction.REFUND_PARTIAL,
                resolution_proposed_by="seller",
                resolution_accepted_by={"seller", "buyer"},
            )
        )
        stored = await sql_repository.get_dispute("d-1")
        assert stored.resolution is ResolutionAction.REFUND_PARTIAL
        assert stored.resolution_accepted_by == {"seller", "buyer"}
        assert stored.resolution_accepted

    @pytest.mark.asyncio
    async def test_active_and_open_queries(self, sql_repository) -> None:
        await sql_repository.save_transaction(_transaction())
        await sql_repository.save_dispute(_dispute("d-closed", status=DisputeStatus.CLOSED))
        await sql_repository.save_dispute(
            _dispute("d-open", created_at=NOW + timedelta(minutes=5))
        )
        active = await sql_repository.get_active_dispute("t-1")
        assert active.id == "d-open"
        assert [d.id for d in await sql_repository.list_open_disputes()] == ["d-open"]
        assert len(await sql_repository.get_disputes_by_participant("seller")) == 2

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, sql_repository) -> None:
        await sql_repository.save_transaction(_transaction())
        dispute = await sql_repository.save_dispute(_dispute())
        dispute.status = DisputeStatus.IN_REVIEW
        dispute.version = 1
        await sql_repository.save_dispute(dispute, expected_version=0)

        dispute.status = DisputeStatus.CLOSED
        with pytest.raises(ConcurrencyConflictError):
            await sql_repository.save_dispute(dispute, expected_version=0)
        assert (await sql_repository.get_dispute("d-1")).status is DisputeStatus.IN_REVIEW

    @pytest.mark.asyncio
    async def test_unsettled_resolutions(self, sql_repository) -> None:
        for tx_id, status in [
            ("t-1", TransactionStatus.DISPUTED),
            ("t-2", TransactionStatus.COMPLETED),
            ("t-3", TransactionStatus.DISPUTED),
        ]:
            await sql_repository.save_transaction(_transaction(tx_id, status=status))
        resolved = {"status": DisputeStatus.RESOLVED}
        await sql_repository.save_dispute(
            _dispute("d-stuck", "t-1", resolution=ResolutionAction.RELEASE_PAYMENT, **resolved)
        )
        await sql_repository.save_dispute(
            _dispute("d-settled", "t-2", resolution=ResolutionAction.RELEASE_PAYMENT, **resolved)
        )
        await sql_repository.save_dispute(
            _dispute("d-no-action", "t-3", resolution=ResolutionAction.NO_ACTION, **resolved)
        )
        assert [d.id for d in await sql_repository.list_unsettled_resolutions()] == ["d-stuck"]

    @pytest.mark.asyncio
    async def test_counts_by_status_and_type(self, sql_repository) -> None:
        await sql_repository.save_transaction(_transaction())
        await sql_repository.save_dispute(_dispute("d-1"))
        await sql_repository.save_dispute(_dispute("d-2"))
        await sql_repository.save_dispute(
            _dispute("d-3", status=DisputeStatus.CLOSED, dispute_type=DisputeType.FRAUD)
        )
        assert await sql_repository.count_disputes() == {
            (DisputeStatus.OPEN, DisputeType.QUALITY): 2,
            (DisputeStatus.CLOSED, DisputeType.FRAUD): 1,
        }

    @pytest.mark.asyncio
    async def test_backend_failure_is_unavailable(self) -> None:
        # No tables were ever created on this database.
        engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        repository = SqlRepository(async_sessionmaker(bind=engine, class_=AsyncSession))
        try:
            with pytest.raises(RepositoryUnavailableError):
                await repository.list_open_disputes()
        finally:
            await engine.dispose()


class TestJoinAcrossProcesses:
    """Two services with separate locks share one database, as two processes would."""

    def _service(self, repository: SqlRepository) -> TransactionService:
        return TransactionService(
            repository,
            InMemoryEventBus(),
            ManualClock(NOW),
            fee_percent=2.5,
            default_currency="USD",
        )

    @pytest.mark.asyncio
    async def test_losing_joiner_sees_already_joined(
        self, session_factory, monkeypatch
    ) -> None:
        first = self._service(SqlRepository(session_factory))
        second_repository = SqlRepository(session_factory)
        second = self._service(second_repository)
        tx = await first.create_transaction(
            CreateTransactionRequest(
                creator_id="seller",
                creator_role=ParticipantRole.SELLER,
                description="Mechanical keyboard",
                price=Decimal("120.00"),
                use_courier=True,
            )
        )

        read_transaction = second_repository.get_transaction
        reads = 0

        async def read_before_other_join(transaction_id):
            # The other process joins between this read and the versioned write.
            nonlocal reads
            found = await read_transaction(transaction_id)
            reads += 1
            if reads == 1:
                await first.join(transaction_id, "buyer-one")
            return found

        monkeypatch.setattr(second_repository, "get_transaction", read_before_other_join)

        with pytest.raises(AlreadyJoinedError):
            await second.join(tx.id, "buyer-two")

        assert reads == 2
        stored = await first.get_transaction(tx.id)
        assert stored.counterparty_id == "buyer-one"
        assert stored.status is TransactionStatus.ACTIVE
        assert stored.version == 1


class TestAdminDirectory:
    @pytest.mark.asyncio
    async def test_listed_in_position_order(self, sql_directory) -> None:
        await sql_directory.upsert_admin(AdminWorkload("zed", max_load=3), position=0)
        await sql_directory.upsert_admin(
            AdminWorkload("amy", max_load=2, specialties=["FRAUD"]), position=1
        )
        admins = await sql_directory.list_admins()
        assert [a.admin_id for a in admins] == ["zed", "amy"]
        assert admins[1].specialties == ["FRAUD"]
        assert admins[1].availability is AdminAvailability.ONLINE

    @pytest.mark.asyncio
    async def test_workload_never_goes_negative(self, sql_directory) -> None:
        await sql_directory.upsert_admin(AdminWorkload("amy", max_load=2))
        assert (await sql_directory.update_workload("amy", 1)).current_load == 1
        assert (await sql_directory.update_workload("amy", -3)).current_load == 0
        assert await sql_directory.update_workload("ghost", 1) is None
