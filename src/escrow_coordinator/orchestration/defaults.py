"""Built-in workflow rules and escalation matrix.

Used when no rules file is configured (settings.workflow_rules_path).
"""

from __future__ import annotations

from escrow_coordinator.domain.enums import (
    ActionType,
    ConditionOperator,
    DisputePriority,
    DisputeStatus,
    LogicalOperator,
    SLAStatus,
)
from escrow_coordinator.schemas.workflow import (
    EscalationRule,
    RuleAction,
    RuleCondition,
    WorkflowRule,
)

_OPEN_OR_IN_REVIEW = [DisputeStatus.OPEN.value, DisputeStatus.IN_REVIEW.value]

AUTO_ESCALATE_URGENT = WorkflowRule(
    id="auto_escalate_urgent",
    name="Auto-escalate urgent disputes",
    description="Alert the assigned admin at once; move to review if still open two hours later.",
    priority=20,
    conditions=(
        RuleCondition(
            field="priority",
            operator=ConditionOperator.EQUALS,
            value=DisputePriority.URGENT.value,
        ),
        RuleCondition(
            field="status",
            operator=ConditionOperator.EQUALS,
            value=DisputeStatus.OPEN.value,
            logical_operator=LogicalOperator.AND,
        ),
    ),
    actions=(
        RuleAction(
            type=ActionType.AUTO_ESCALATE,
            parameters={
                "to_status": DisputeStatus.IN_REVIEW.value,
                "reason": "Urgent dispute still open after 2 hours",
            },
            delay_minutes=120,
        ),
        RuleAction(
            type=ActionType.SEND_NOTIFICATION,
            parameters={
                "template": "URGENT_ESCALATION",
                "recipients": ["admin"],
                "message": "Urgent dispute {{id}}: {{reason}}",
            },
        ),
    ),
)

AUTO_ESCALATE_OVERDUE = WorkflowRule(
    id="auto_escalate_overdue",
    name="Auto-escalate overdue disputes",
    description="Escalate and alert when a dispute breaches its SLA.",
    priority=30,
    conditions=(
        RuleCondition(
            field="sla_status",
            operator=ConditionOperator.EQUALS,
            value=SLAStatus.OVERDUE.value,
        ),
        RuleCondition(
            field="status",
            operator=ConditionOperator.IN,
            value=_OPEN_OR_IN_REVIEW,
            logical_operator=LogicalOperator.AND,
        ),
    ),
    actions=(
        RuleAction(
            type=ActionType.AUTO_ESCALATE,
            parameters={
                "to_status": DisputeStatus.IN_REVIEW.value,
                "reason": "SLA breached",
            },
        ),
        RuleAction(
            type=ActionType.SEND_NOTIFICATION,
            parameters={
                "template": "SLA_BREACH",
                "recipients": ["admin", "counterparty"],
                "message": (
                    "Dispute {{id}} has exceeded its SLA threshold. "
                    "Time elapsed: {{elapsed_hours}} hours."
                ),
            },
        ),
        RuleAction(
            type=ActionType.SET_PRIORITY,
            parameters={"priority": DisputePriority.URGENT.value},
        ),
    ),
)

ASSIGN_SPECIALIST = WorkflowRule(
    id="assign_specialist",
    name="Assign specialist admin",
    description="Give every unassigned open dispute to an available admin.",
    priority=10,
    conditions=(
        RuleCondition(
            field="status",
            operator=ConditionOperator.EQUALS,
            value=DisputeStatus.OPEN.value,
        ),
        RuleCondition(
            field="assigned_admin_id",
            operator=ConditionOperator.EQUALS,
            value=None,
            logical_operator=LogicalOperator.AND,
        ),
    ),
    actions=(RuleAction(type=ActionType.ASSIGN_ADMIN),),
)

AUTO_CLOSE_ABANDONED = WorkflowRule(
    id="auto_close_abandoned",
    name="Auto-close abandoned disputes",
    description="Close open disputes with no activity for longer than their auto-resolve window.",
    priority=40,
    conditions=(
        RuleCondition(
            field="status",
            operator=ConditionOperator.EQUALS,
            value=DisputeStatus.OPEN.value,
        ),
        RuleCondition(
            field="abandoned",
            operator=ConditionOperator.EQUALS,
            value=True,
            logical_operator=LogicalOperator.AND,
        ),
    ),
    actions=(
        RuleAction(
            type=ActionType.UPDATE_STATUS,
            parameters={
                "status": DisputeStatus.CLOSED.value,
                "reason": "No activity for {{hours_since_activity}} hours",
            },
        ),
        RuleAction(
            type=ActionType.SEND_EMAIL,
            parameters={
                "template": "DISPUTE_AUTO_CLOSED",
                "recipients": ["raiser", "accused"],
                "subject": "Dispute {{id}} was closed after inactivity",
            },
        ),
    ),
)

DEFAULT_RULES: tuple[WorkflowRule, ...] = (
    ASSIGN_SPECIALIST,
    AUTO_ESCALATE_URGENT,
    AUTO_ESCALATE_OVERDUE,
    AUTO_CLOSE_ABANDONED,
)

DEFAULT_ESCALATION_MATRIX: tuple[EscalationRule, ...] = (
    EscalationRule(
        from_status=DisputeStatus.OPEN,
        to_status=DisputeStatus.IN_REVIEW,
        conditions=(
            RuleCondition(
                field="priority",
                operator=ConditionOperator.IN,
                value=[DisputePriority.HIGH.value, DisputePriority.URGENT.value],
            ),
            RuleCondition(
                field="elapsed_hours",
                operator=ConditionOperator.GREATER_THAN,
                value=2,
                logical_operator=LogicalOperator.AND,
            ),
        ),
    ),
    EscalationRule(
        from_status=DisputeStatus.IN_REVIEW,
        to_status=DisputeStatus.RESOLVED,
        conditions=(
            RuleCondition(
                field="resolution",
                operator=ConditionOperator.NOT_EQUALS,
                value=None,
            ),
            RuleCondition(
                field="resolution_accepted",
                operator=ConditionOperator.EQUALS,
                value=True,
                logical_operator=LogicalOperator.AND,
            ),
        ),
    ),
)
