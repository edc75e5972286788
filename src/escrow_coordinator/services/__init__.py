"""Application services: use case orchestration."""

from escrow_coordinator.services.admin_balancer import AdminWorkloadBalancer
from escrow_coordinator.services.dispute_service import DisputeService, StatusChange
from escrow_coordinator.services.transaction_service import TransactionService

__all__ = ["AdminWorkloadBalancer", "DisputeService", "StatusChange", "TransactionService"]
