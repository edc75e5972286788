"""SLA calculator.

Pure functions over (priority, timestamps, now). Nothing here is persisted:
SLA status and elapsed times are recomputed on every read so that they can
never drift from the clock.

Usage:
    snapshot = calculate_sla(DisputePriority.URGENT, created_at, clock.now())
    snapshot.status   # SLAStatus.AT_RISK after 13 hours
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_coordinator.domain.enums import DisputePriority, DisputeStatus, SLAStatus

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from escrow_coordinator.domain.models import Dispute


@dataclass(frozen=True)
class SLAConfig:
    """Thresholds, in hours, for one dispute priority."""

    priority: DisputePriority
    max_hours: float
    escalation_hours: float
    auto_resolve_hours: float


DEFAULT_SLA_CONFIGS: dict[DisputePriority, SLAConfig] = {
    DisputePriority.URGENT: SLAConfig(DisputePriority.URGENT, 24, 12, 48),
    DisputePriority.HIGH: SLAConfig(DisputePriority.HIGH, 72, 48, 168),
    DisputePriority.MEDIUM: SLAConfig(DisputePriority.MEDIUM, 168, 120, 720),
    DisputePriority.LOW: SLAConfig(DisputePriority.LOW, 336, 240, 1440),
}


@dataclass(frozen=True)
class SLASnapshot:
    status: SLAStatus
    elapsed_hours: float
    config: SLAConfig


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def config_for(
    priority: DisputePriority,
    configs: Mapping[DisputePriority, SLAConfig] | None = None,
) -> SLAConfig:
    """Return the thresholds for a priority, falling back to MEDIUM."""
    table = configs if configs is not None else DEFAULT_SLA_CONFIGS
    config = table.get(priority) or table.get(DisputePriority.MEDIUM)
    if config is None:
        return DEFAULT_SLA_CONFIGS[priority]
    return config


def calculate_sla(
    priority: DisputePriority,
    created_at: datetime,
    now: datetime,
    configs: Mapping[DisputePriority, SLAConfig] | None = None,
) -> SLASnapshot:
    """Classify a dispute's age against its priority's thresholds.

    OVERDUE once elapsed exceeds max_hours, AT_RISK once it exceeds
    escalation_hours, ON_TIME otherwise. Both comparisons are strict.
    """
    config = config_for(priority, configs)
    elapsed = hours_between(created_at, now)
    if elapsed > config.max_hours:
        status = SLAStatus.OVERDUE
    elif elapsed > config.escalation_hours:
        status = SLAStatus.AT_RISK
    else:
        status = SLAStatus.ON_TIME
    return SLASnapshot(status=status, elapsed_hours=elapsed, config=config)


def time_to_resolution_hours(
    created_at: datetime,
    resolved_at: datetime | None,
    now: datetime,
) -> float:
    """Hours from creation to resolution, or to now while unresolved."""
    end = resolved_at if resolved_at is not None else now
    return hours_between(created_at, end)


@dataclass(frozen=True)
class DisputeView:
    """A dispute together with its derived, never-persisted fields."""

    dispute: Dispute
    sla_status: SLAStatus
    elapsed_hours: float
    time_to_resolution_hours: float
    hours_since_activity: float
    sla: SLAConfig

    @property
    def resolution_accepted(self) -> bool:
        return self.dispute.resolution_accepted


def build_dispute_view(
    dispute: Dispute,
    now: datetime,
    configs: Mapping[DisputePriority, SLAConfig] | None = None,
) -> DisputeView:
    snapshot = calculate_sla(dispute.priority, dispute.created_at, now, configs)
    resolved_at = dispute.resolved_at
    if resolved_at is None and dispute.status is DisputeStatus.CLOSED:
        resolved_at = dispute.updated_at
    return DisputeView(
        dispute=dispute,
        sla_status=snapshot.status,
        elapsed_hours=snapshot.elapsed_hours,
        time_to_resolution_hours=time_to_resolution_hours(
            dispute.created_at, resolved_at, now
        ),
        hours_since_activity=hours_between(dispute.updated_at, now),
        sla=snapshot.config,
    )
