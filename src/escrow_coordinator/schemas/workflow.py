"""Pydantic schemas for workflow rules and the escalation matrix.

Rules are immutable once loaded. They can be declared in code (see
orchestration/defaults.py) or loaded from a JSON document:

    {
      "rules": [
        {
          "id": "auto_escalate_overdue",
          "name": "Auto-escalate overdue disputes",
          "priority": 20,
          "conditions": [
            {"field": "sla_status", "operator": "equals", "value": "OVERDUE"},
            {"field": "status", "operator": "in", "value": ["OPEN", "IN_REVIEW"],
             "logical_operator": "AND"}
          ],
          "actions": [
            {"type": "AUTO_ESCALATE", "parameters": {"to_status": "IN_REVIEW"}}
          ]
        }
      ],
      "escalation_matrix": []
    }

Condition operators are kept as plain strings: an unknown operator in a rule
file makes that condition evaluate false instead of rejecting the file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from escrow_coordinator.domain.enums import ActionType, DisputeStatus, LogicalOperator


class RuleCondition(BaseModel):
    """One comparison in a rule's condition chain."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1, description="Field path, e.g. 'sla_status'")
    operator: str = Field(..., description="ConditionOperator value")
    value: Any = None
    logical_operator: LogicalOperator | None = Field(
        default=None,
        description="How this result joins the previous one (AND when omitted)",
    )


class RuleAction(BaseModel):
    """A side effect fired when a rule's conditions hold."""

    model_config = ConfigDict(frozen=True)

    type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)
    delay_minutes: float | None = Field(
        default=None,
        ge=0,
        description="Fire this long after the rule first matches (re-checked at fire time)",
    )

    @property
    def is_delayed(self) -> bool:
        return bool(self.delay_minutes)


class WorkflowRule(BaseModel):
    """A named condition chain plus the ordered actions it fires."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    conditions: tuple[RuleCondition, ...] = ()
    actions: tuple[RuleAction, ...] = ()
    enabled: bool = True
    priority: int = Field(default=100, description="Lower runs first")


class EscalationRule(BaseModel):
    """One cell of the escalation matrix: move from_status -> to_status when conditions hold."""

    model_config = ConfigDict(frozen=True)

    from_status: DisputeStatus
    to_status: DisputeStatus
    conditions: tuple[RuleCondition, ...] = ()
    actions: tuple[RuleAction, ...] = ()

    @property
    def id(self) -> str:
        return f"matrix:{self.from_status}->{self.to_status}"


class RulesDocument(BaseModel):
    """Top-level shape of a rules file."""

    rules: list[WorkflowRule] = Field(default_factory=list)
    escalation_matrix: list[EscalationRule] | None = None


def load_rules(path: str | Path) -> RulesDocument:
    """Read and validate a JSON rules document.

    Raises:
        pydantic.ValidationError: If the document does not match the schema.
        OSError: If the file cannot be read.
    """
    return RulesDocument.model_validate_json(Path(path).read_text(encoding="utf-8"))
