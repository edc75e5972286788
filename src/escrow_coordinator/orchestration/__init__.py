"""Orchestration layer: rule-based dispute workflow and the escalation matrix."""

from escrow_coordinator.orchestration.conditions import (
    UNDEFINED,
    EvaluationContext,
    compile_rule,
    render,
)
from escrow_coordinator.orchestration.defaults import DEFAULT_ESCALATION_MATRIX, DEFAULT_RULES
from escrow_coordinator.orchestration.escalation import EscalationMatrix
from escrow_coordinator.orchestration.workflow_engine import (
    PendingAction,
    TickReport,
    WorkflowEngine,
    configured_rules,
)

__all__ = [
    "DEFAULT_ESCALATION_MATRIX",
    "DEFAULT_RULES",
    "UNDEFINED",
    "EscalationMatrix",
    "EvaluationContext",
    "PendingAction",
    "TickReport",
    "WorkflowEngine",
    "compile_rule",
    "configured_rules",
    "render",
]
