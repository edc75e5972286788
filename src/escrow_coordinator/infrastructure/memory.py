"""In-memory adapters for the domain ports.

Used by tests and by local runs without Postgres/Redis. They follow the same
contracts as the SQL and Redis adapters: records are copied on the way in and
out, saves check versions, and fired keys expire on the injected clock.
"""

from __future__ import annotations

from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING

from escrow_coordinator.domain.enums import (
    SETTLING_RESOLUTIONS,
    DisputeStatus,
    DisputeType,
    TransactionStatus,
)
from escrow_coordinator.domain.exceptions import (
    ConcurrencyConflictError,
    RepositoryUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from escrow_coordinator.domain.models import AdminWorkload, Dispute, Transaction
    from escrow_coordinator.domain.ports import Clock


class InMemoryRepository:
    """Dictionary-backed Repository.

    Set ``available = False`` to simulate a storage outage: every call then
    raises RepositoryUnavailableError.
    """

    def __init__(self) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._disputes: dict[str, Dispute] = {}
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise RepositoryUnavailableError("In-memory repository marked unavailable")

    # --- Transactions ---

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        self._check_available()
        stored = self._transactions.get(transaction_id)
        return stored.copy() if stored else None

    async def list_transactions_by_participant(self, user_id: str) -> list[Transaction]:
        self._check_available()
        found = [t for t in self._transactions.values() if t.is_participant(user_id)]
        found.sort(key=lambda t: t.created_at, reverse=True)
        return [t.copy() for t in found]

    async def save_transaction(
        self, transaction: Transaction, expected_version: int | None = None
    ) -> Transaction:
        self._check_available()
        stored = self._transactions.get(transaction.id)
        if expected_version is not None:
            current = stored.version if stored else 0
            if current != expected_version:
                raise ConcurrencyConflictError("Transaction", transaction.id, expected_version)
        self._transactions[transaction.id] = transaction.copy()
        return transaction.copy()

    # --- Disputes ---

    async def get_dispute(self, dispute_id: str) -> Dispute | None:
        self._check_available()
        stored = self._disputes.get(dispute_id)
        return stored.copy() if stored else None

    async def get_disputes_by_participant(self, user_id: str) -> list[Dispute]:
        self._check_available()
        found = [d for d in self._disputes.values() if d.is_party(user_id)]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return [d.copy() for d in found]

    async def get_active_dispute(self, transaction_id: str) -> Dispute | None:
        self._check_available()
        for dispute in self._disputes.values():
            if dispute.transaction_id == transaction_id and dispute.is_active:
                return dispute.copy()
        return None

    async def list_open_disputes(self) -> list[Dispute]:
        self._check_available()
        found = [d for d in self._disputes.values() if d.is_active]
        found.sort(key=lambda d: d.created_at)
        return [d.copy() for d in found]

    async def list_unsettled_resolutions(self) -> list[Dispute]:
        self._check_available()
        found = []
        for dispute in self._disputes.values():
            if dispute.status is not DisputeStatus.RESOLVED:
                continue
            if dispute.resolution not in SETTLING_RESOLUTIONS:
                continue
            transaction = self._transactions.get(dispute.transaction_id)
            if transaction is not None and transaction.status is TransactionStatus.DISPUTED:
                found.append(dispute)
        found.sort(key=lambda d: d.created_at)
        return [d.copy() for d in found]

    async def count_disputes(self) -> dict[tuple[DisputeStatus, DisputeType], int]:
        self._check_available()
        return dict(Counter((d.status, d.dispute_type) for d in self._disputes.values()))

    async def save_dispute(self, dispute: Dispute, expected_version: int | None = None) -> Dispute:
        self._check_available()
        stored = self._disputes.get(dispute.id)
        if expected_version is not None:
            current = stored.version if stored else 0
            if current != expected_version:
                raise ConcurrencyConflictError("Dispute", dispute.id, expected_version)
        self._disputes[dispute.id] = dispute.copy()
        return dispute.copy()


class InMemoryAdminDirectory:
    """AdminDirectory over a fixed list of admins, in insertion order."""

    def __init__(self, admins: Iterable[AdminWorkload] = ()) -> None:
        self._admins: dict[str, AdminWorkload] = {a.admin_id: a.copy() for a in admins}

    def add(self, admin: AdminWorkload) -> None:
        self._admins[admin.admin_id] = admin.copy()

    async def list_admins(self) -> list[AdminWorkload]:
        return [a.copy() for a in self._admins.values()]

    async def update_workload(self, admin_id: str, delta: int) -> AdminWorkload | None:
        admin = self._admins.get(admin_id)
        if admin is None:
            return None
        admin.current_load = max(0, admin.current_load + delta)
        return admin.copy()


class InMemoryFiredKeyStore:
    """FiredKeyStore whose keys expire on the injected clock."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._expiry: dict[str, datetime] = {}

    def _live(self, key: str) -> bool:
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return False
        if expires_at <= self._clock.now():
            del self._expiry[key]
            return False
        return True

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        if self._live(key):
            return False
        self._expiry[key] = self._clock.now() + timedelta(seconds=ttl_seconds)
        return True

    async def refresh(self, key: str, ttl_seconds: int) -> None:
        if self._live(key):
            self._expiry[key] = self._clock.now() + timedelta(seconds=ttl_seconds)

    async def release(self, key: str) -> None:
        self._expiry.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._live(key)

    def keys(self) -> list[str]:
        return [k for k in list(self._expiry) if self._live(k)]
