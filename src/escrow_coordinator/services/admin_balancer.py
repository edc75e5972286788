"""Admin Workload Balancer: picks the admin that handles a dispute.

Matching is filter, then preference, then order:
    1. keep ONLINE admins with spare capacity (current_load < max_load),
    2. prefer those whose specialties include the dispute type,
    3. take the first remaining admin in directory order.

Assignment increments the admin's load; release() gives it back when the
dispute leaves OPEN/IN_REVIEW. provisional() wraps an assignment whose
persistence is still pending and undoes it if the enclosing block fails.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from escrow_coordinator.domain.enums import AdminAvailability
from escrow_coordinator.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from escrow_coordinator.domain.models import AdminWorkload, Dispute
    from escrow_coordinator.domain.ports import AdminDirectory

logger = get_logger(__name__)


class AdminWorkloadBalancer:
    def __init__(self, directory: AdminDirectory) -> None:
        self._directory = directory

    async def pick(self, dispute: Dispute) -> AdminWorkload | None:
        """Return the best candidate for a dispute without assigning it."""
        admins = await self._directory.list_admins()
        candidates = [
            a for a in admins if a.availability is AdminAvailability.ONLINE and a.has_capacity
        ]
        if not candidates:
            return None
        specialists = [a for a in candidates if a.handles(dispute.dispute_type)]
        return (specialists or candidates)[0]

    async def assign(self, dispute: Dispute) -> AdminWorkload | None:
        """Assign the dispute to the best candidate and take one unit of their capacity.

        Sets ``dispute.assigned_admin_id`` on the given record; persisting it is
        the caller's job. Returns None when nobody is available, which is an
        expected outcome (the workflow engine retries on its next tick).
        """
        if dispute.assigned_admin_id is not None:
            return None
        admin = await self.pick(dispute)
        if admin is None:
            logger.info(
                "balancer.no_admin_available",
                dispute_id=dispute.id,
                dispute_type=str(dispute.dispute_type),
            )
            return None
        updated = await self._directory.update_workload(admin.admin_id, 1)
        dispute.assigned_admin_id = admin.admin_id
        logger.info(
            "balancer.admin_assigned",
            dispute_id=dispute.id,
            admin_id=admin.admin_id,
            load=updated.current_load if updated else None,
        )
        return updated or admin

    async def release(self, dispute: Dispute) -> None:
        """Give back the capacity held by the dispute's assigned admin."""
        if dispute.assigned_admin_id is None:
            return
        await self._directory.update_workload(dispute.assigned_admin_id, -1)
        logger.info(
            "balancer.admin_released",
            dispute_id=dispute.id,
            admin_id=dispute.assigned_admin_id,
        )

    @asynccontextmanager
    async def provisional(self, dispute: Dispute) -> AsyncIterator[AdminWorkload | None]:
        """Assign for the duration of a block; undo the assignment if the block raises."""
        admin = await self.assign(dispute)
        try:
            yield admin
        except BaseException:
            if admin is not None:
                await self._directory.update_workload(admin.admin_id, -1)
                dispute.assigned_admin_id = None
                logger.warning(
                    "balancer.assignment_rolled_back",
                    dispute_id=dispute.id,
                    admin_id=admin.admin_id,
                )
            raise
