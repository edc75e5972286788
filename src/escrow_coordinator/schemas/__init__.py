"""Pydantic schemas: requests, event payloads, and workflow rules."""

from escrow_coordinator.schemas.transaction import (
    CreateTransactionRequest,
    DisputePayload,
    TimelineEntry,
    TransactionPayload,
)
from escrow_coordinator.schemas.workflow import (
    EscalationRule,
    RuleAction,
    RuleCondition,
    RulesDocument,
    WorkflowRule,
    load_rules,
)

__all__ = [
    "CreateTransactionRequest",
    "DisputePayload",
    "TimelineEntry",
    "TransactionPayload",
    "EscalationRule",
    "RuleAction",
    "RuleCondition",
    "RulesDocument",
    "WorkflowRule",
    "load_rules",
]
