"""Ports consumed by the services and the workflow engine.

These are Protocols (structural subtyping) so adapters don't need to inherit
from a base class. The domain layer has ZERO imports from SQLAlchemy, Redis,
or any other storage or transport library.

Adapters:
    - Repository:     infrastructure/database/repositories.py, infrastructure/memory.py
    - EventGateway:   infrastructure/event_bus.py, infrastructure/redis_client.py
    - Notifier:       infrastructure/event_bus.py
    - AdminDirectory: infrastructure/database/repositories.py, infrastructure/memory.py
    - FiredKeyStore:  infrastructure/redis_client.py, infrastructure/memory.py
    - Clock:          clock.py
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from escrow_coordinator.domain.enums import DisputeStatus, DisputeType, EventType
    from escrow_coordinator.domain.models import AdminWorkload, Dispute, Transaction


@runtime_checkable
class Repository(Protocol):
    """Exclusive owner of persisted transactions and disputes.

    Every read returns a copy; every save is atomic per record. When
    expected_version is given, the save raises ConcurrencyConflictError if the
    stored version differs. Backend outages surface as RepositoryUnavailableError.
    """

    async def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    async def list_transactions_by_participant(self, user_id: str) -> list[Transaction]: ...

    async def save_transaction(
        self, transaction: Transaction, expected_version: int | None = None
    ) -> Transaction: ...

    async def get_dispute(self, dispute_id: str) -> Dispute | None: ...

    async def get_disputes_by_participant(self, user_id: str) -> list[Dispute]: ...

    async def get_active_dispute(self, transaction_id: str) -> Dispute | None:
        """Return the OPEN or IN_REVIEW dispute of a transaction, if any."""
        ...

    async def list_open_disputes(self) -> list[Dispute]:
        """Return every OPEN or IN_REVIEW dispute, oldest first."""
        ...

    async def list_unsettled_resolutions(self) -> list[Dispute]:
        """Return RESOLVED disputes decided RELEASE_PAYMENT, REFUND_PARTIAL, or
        REFUND_FULL whose transaction is still DISPUTED, oldest first."""
        ...

    async def count_disputes(self) -> dict[tuple[DisputeStatus, DisputeType], int]:
        """Return the number of disputes per (status, type) pair."""
        ...

    async def save_dispute(
        self, dispute: Dispute, expected_version: int | None = None
    ) -> Dispute: ...


@runtime_checkable
class EventGateway(Protocol):
    """Broadcasts state changes to connected clients."""

    async def emit(self, event_type: EventType, payload: dict[str, Any]) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    """Delivers a templated notification to one user. Fire-and-forget."""

    async def notify(self, user_id: str, template: str, metadata: dict[str, Any]) -> None: ...


@runtime_checkable
class AdminDirectory(Protocol):
    """Lists dispute-handling admins and tracks their open-dispute load."""

    async def list_admins(self) -> list[AdminWorkload]:
        """Return every admin in stable directory order."""
        ...

    async def update_workload(self, admin_id: str, delta: int) -> AdminWorkload | None:
        """Adjust an admin's current load by delta (never below zero)."""
        ...


@runtime_checkable
class Clock(Protocol):
    """Source of time for SLA math, timestamps, and delayed actions."""

    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None: ...


@runtime_checkable
class FiredKeyStore(Protocol):
    """Durable record of workflow actions that have already fired.

    claim() is an atomic set-if-absent: it returns True for exactly one caller
    per key until the key expires or is released.
    """

    async def claim(self, key: str, ttl_seconds: int) -> bool: ...

    async def refresh(self, key: str, ttl_seconds: int) -> None: ...

    async def release(self, key: str) -> None: ...
