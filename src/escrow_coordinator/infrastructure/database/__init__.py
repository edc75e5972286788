"""Database infrastructure: engine, ORM models, and repositories."""

from escrow_coordinator.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
    session_scope,
)
from escrow_coordinator.infrastructure.database.orm_models import (
    AdminWorkloadRow,
    Base,
    DisputeRow,
    TransactionRow,
)
from escrow_coordinator.infrastructure.database.repositories import (
    SqlAdminDirectory,
    SqlRepository,
)

__all__ = [
    "Base",
    "AdminWorkloadRow",
    "DisputeRow",
    "TransactionRow",
    "SqlAdminDirectory",
    "SqlRepository",
    "get_session_factory",
    "session_scope",
    "init_db",
    "close_db",
]
