"""Shared test fixtures for the escrow coordinator test suite.

Provides:
    - A ManualClock pinned to T0 (2025-01-01 00:00 UTC)
    - In-memory ports (repository, event bus, admin directory, fired keys)
    - Wired services and a workflow engine running the default rules
    - Factories for joined transactions and raised disputes
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio

from escrow_coordinator.clock import ManualClock
from escrow_coordinator.domain.enums import (
    DisputePriority,
    DisputeType,
    ParticipantRole,
    TransactionAction,
)
from escrow_coordinator.domain.models import AdminWorkload
from escrow_coordinator.infrastructure.event_bus import GatewayNotifier, InMemoryEventBus
from escrow_coordinator.infrastructure.memory import (
    InMemoryAdminDirectory,
    InMemoryFiredKeyStore,
    InMemoryRepository,
)
from escrow_coordinator.orchestration.defaults import DEFAULT_ESCALATION_MATRIX, DEFAULT_RULES
from escrow_coordinator.orchestration.workflow_engine import WorkflowEngine
from escrow_coordinator.schemas.transaction import CreateTransactionRequest
from escrow_coordinator.services.admin_balancer import AdminWorkloadBalancer
from escrow_coordinator.services.dispute_service import DisputeService
from escrow_coordinator.services.transaction_service import TransactionService

T0 = datetime(2025, 1, 1, tzinfo=UTC)

SELLER = "seller-sam"
BUYER = "buyer-bo"
ADMIN = "admin-ada"

# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def directory() -> InMemoryAdminDirectory:
    return InMemoryAdminDirectory(
        [AdminWorkload(admin_id=ADMIN, name="Ada", max_load=5, specialties=["PAYMENT"])]
    )


@pytest.fixture
def fired_keys(clock: ManualClock) -> InMemoryFiredKeyStore:
    return InMemoryFiredKeyStore(clock)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def balancer(directory: InMemoryAdminDirectory) -> AdminWorkloadBalancer:
    return AdminWorkloadBalancer(directory)


@pytest.fixture
def transactions(
    repository: InMemoryRepository, bus: InMemoryEventBus, clock: ManualClock
) -> TransactionService:
    return TransactionService(
        repository, bus, clock, fee_percent=2.5, default_currency="USD"
    )


@pytest.fixture
def disputes(
    repository: InMemoryRepository,
    transactions: TransactionService,
    balancer: AdminWorkloadBalancer,
    bus: InMemoryEventBus,
    clock: ManualClock,
) -> DisputeService:
    return DisputeService(repository, transactions, balancer, bus, clock)


@pytest_asyncio.fixture
async def engine(
    repository: InMemoryRepository,
    disputes: DisputeService,
    balancer: AdminWorkloadBalancer,
    bus: InMemoryEventBus,
    fired_keys: InMemoryFiredKeyStore,
    clock: ManualClock,
):
    workflow = WorkflowEngine(
        repository,
        disputes,
        balancer,
        bus,
        GatewayNotifier(bus),
        fired_keys,
        clock,
        rules=DEFAULT_RULES,
        escalation_matrix=DEFAULT_ESCALATION_MATRIX,
        interval_seconds=300,
        fired_key_ttl_seconds=90 * 24 * 3600,
        claim_grace_seconds=600,
    )
    yield workflow
    await workflow.stop()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_request() -> CreateTransactionRequest:
    """A seller-created courier trade."""
    return CreateTransactionRequest(
        creator_id=SELLER,
        creator_role=ParticipantRole.SELLER,
        description="Refurbished film camera",
        price=Decimal("200.00"),
        use_courier=True,
    )


@pytest.fixture
def joined_transaction(transactions: TransactionService, sample_request: CreateTransactionRequest):
    """Factory: create the sample trade, let the buyer join, and pay for it."""

    async def _create(paid: bool = True):
        tx = await transactions.create_transaction(sample_request)
        tx = await transactions.join(tx.id, BUYER)
        if paid:
            tx = await transactions.transition(
                tx.id, SELLER, TransactionAction.REQUEST_DELIVERY_DETAILS
            )
            tx = await transactions.transition(
                tx.id, BUYER, TransactionAction.PROVIDE_DELIVERY_DETAILS
            )
            tx = await transactions.transition(tx.id, BUYER, TransactionAction.MAKE_PAYMENT)
        return tx

    return _create


@pytest.fixture
def raised_dispute(joined_transaction, disputes: DisputeService):
    """Factory: a paid trade disputed by the buyer."""

    async def _raise(
        priority: DisputePriority = DisputePriority.MEDIUM,
        dispute_type: DisputeType = DisputeType.DELIVERY,
    ):
        tx = await joined_transaction()
        return await disputes.raise_dispute(
            tx.id, BUYER, dispute_type, "Parcel never arrived", priority=priority
        )

    return _raise
