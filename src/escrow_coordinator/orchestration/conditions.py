"""Condition evaluation for workflow rules and the escalation matrix.

Field paths are resolved against a fixed registry and compiled once per rule,
so evaluating a rule never reflects over arbitrary attributes. A path that is
not in the registry resolves to UNDEFINED, and every comparison against
UNDEFINED is false except not_equals. Malformed conditions (unknown operator,
incomparable types) evaluate to false and never raise.

Chains are evaluated left to right: the first condition seeds the result and
each later one joins it with its logical_operator (AND when omitted). An
empty chain is true.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from decimal import InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, Any

from escrow_coordinator.domain.enums import ActionType, ConditionOperator, LogicalOperator
from escrow_coordinator.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from escrow_coordinator.domain.models import Dispute, Transaction
    from escrow_coordinator.domain.sla import DisputeView
    from escrow_coordinator.schemas.workflow import RuleAction, RuleCondition, WorkflowRule

logger = get_logger(__name__)


class _Undefined:
    """Value of a field path that the registry does not know."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a rule can look at for one dispute at one instant."""

    view: DisputeView
    transaction: Transaction | None

    @property
    def dispute(self) -> Dispute:
        return self.view.dispute


# ---------------------------------------------------------------------------
# Field registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSpec:
    """A readable field. Volatile fields change continuously with the clock."""

    name: str
    getter: Callable[[EvaluationContext], Any]
    volatile: bool = False


def _from_transaction(getter: Callable[[Transaction], Any]) -> Callable[[EvaluationContext], Any]:
    def read(ctx: EvaluationContext) -> Any:
        if ctx.transaction is None:
            return UNDEFINED
        return getter(ctx.transaction)

    return read


_SPECS: tuple[FieldSpec, ...] = (
    # Dispute record
    FieldSpec("id", lambda ctx: ctx.dispute.id),
    FieldSpec("transaction_id", lambda ctx: ctx.dispute.transaction_id),
    FieldSpec("status", lambda ctx: ctx.dispute.status),
    FieldSpec("priority", lambda ctx: ctx.dispute.priority),
    FieldSpec("dispute_type", lambda ctx: ctx.dispute.dispute_type),
    FieldSpec("reason", lambda ctx: ctx.dispute.reason),
    FieldSpec("raiser_id", lambda ctx: ctx.dispute.raiser_id),
    FieldSpec("accused_id", lambda ctx: ctx.dispute.accused_id),
    FieldSpec("assigned_admin_id", lambda ctx: ctx.dispute.assigned_admin_id),
    FieldSpec("resolution", lambda ctx: ctx.dispute.resolution),
    FieldSpec("resolution_proposed_by", lambda ctx: ctx.dispute.resolution_proposed_by),
    # Derived (never persisted)
    FieldSpec("resolution_accepted", lambda ctx: ctx.view.resolution_accepted),
    FieldSpec("sla_status", lambda ctx: ctx.view.sla_status),
    FieldSpec("elapsed_hours", lambda ctx: ctx.view.elapsed_hours, volatile=True),
    FieldSpec(
        "time_to_resolution_hours",
        lambda ctx: ctx.view.time_to_resolution_hours,
        volatile=True,
    ),
    FieldSpec("hours_since_activity", lambda ctx: ctx.view.hours_since_activity, volatile=True),
    FieldSpec("max_hours", lambda ctx: ctx.view.sla.max_hours),
    FieldSpec("escalation_hours", lambda ctx: ctx.view.sla.escalation_hours),
    FieldSpec("auto_resolve_hours", lambda ctx: ctx.view.sla.auto_resolve_hours),
    FieldSpec(
        "abandoned",
        lambda ctx: ctx.view.hours_since_activity > ctx.view.sla.auto_resolve_hours,
    ),
    # Disputed transaction
    FieldSpec("transaction.status", _from_transaction(lambda tx: tx.status)),
    FieldSpec("transaction.price", _from_transaction(lambda tx: tx.price)),
    FieldSpec("transaction.total", _from_transaction(lambda tx: tx.total)),
    FieldSpec("transaction.currency", _from_transaction(lambda tx: tx.currency)),
    FieldSpec("transaction.use_courier", _from_transaction(lambda tx: tx.use_courier)),
    FieldSpec("transaction.description", _from_transaction(lambda tx: tx.description)),
)

FIELDS: dict[str, FieldSpec] = {spec.name: spec for spec in _SPECS}

_ALIASES = {"type": "dispute_type"}


def canonical_field(path: str) -> str:
    """Normalize a field path: 'dispute.status' -> 'status', 'type' -> 'dispute_type'."""
    path = path.strip()
    if path.startswith("dispute."):
        path = path[len("dispute.") :]
    return _ALIASES.get(path, path)


def resolve_field(path: str, ctx: EvaluationContext) -> Any:
    spec = FIELDS.get(canonical_field(path))
    return spec.getter(ctx) if spec else UNDEFINED


# Fields each action type writes. Excluded from dedupe signatures so that a
# rule does not re-qualify because of its own effect.
_WRITES: dict[ActionType, frozenset[str]] = {
    ActionType.AUTO_ESCALATE: frozenset({"status"}),
    ActionType.UPDATE_STATUS: frozenset({"status"}),
    ActionType.SET_PRIORITY: frozenset({"priority"}),
    ActionType.ASSIGN_ADMIN: frozenset({"assigned_admin_id"}),
}


def fields_written_by(actions: Iterable[RuleAction]) -> frozenset[str]:
    written: set[str] = set()
    for action in actions:
        written |= _WRITES.get(action.type, frozenset())
    return frozenset(written)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    needle = str(expected).lower()
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(str(item).lower() == needle for item in actual)
    return needle in str(actual).lower()


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda a, e: a == e,
    ConditionOperator.NOT_EQUALS: lambda a, e: a != e,
    ConditionOperator.GREATER_THAN: lambda a, e: a > e,
    ConditionOperator.LESS_THAN: lambda a, e: a < e,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.IN: lambda a, e: _is_collection(e) and a in e,
    ConditionOperator.NOT_IN: lambda a, e: _is_collection(e) and a not in e,
}


@dataclass(frozen=True)
class CompiledCondition:
    path: str
    spec: FieldSpec | None
    operator: str
    value: Any
    joiner: LogicalOperator
    predicate: Callable[[Any, Any], bool] | None

    def resolve(self, ctx: EvaluationContext) -> Any:
        return self.spec.getter(ctx) if self.spec else UNDEFINED

    def holds(self, ctx: EvaluationContext) -> bool:
        if self.predicate is None:
            return False
        actual = self.resolve(ctx)
        if actual is UNDEFINED:
            return self.operator == ConditionOperator.NOT_EQUALS
        try:
            return bool(self.predicate(actual, self.value))
        except (TypeError, ValueError, InvalidOperation):
            return False


def compile_condition(condition: RuleCondition) -> CompiledCondition:
    name = canonical_field(condition.field)
    spec = FIELDS.get(name)
    if spec is None:
        logger.warning("workflow.unknown_field", field=condition.field)
    predicate = _OPERATORS.get(condition.operator)
    if predicate is None:
        logger.warning("workflow.unknown_operator", operator=condition.operator)
    return CompiledCondition(
        path=name,
        spec=spec,
        operator=condition.operator,
        value=condition.value,
        joiner=condition.logical_operator or LogicalOperator.AND,
        predicate=predicate,
    )


@dataclass(frozen=True)
class ConditionChain:
    conditions: tuple[CompiledCondition, ...]

    def holds(self, ctx: EvaluationContext) -> bool:
        if not self.conditions:
            return True
        first, *rest = self.conditions
        result = first.holds(ctx)
        for condition in rest:
            if condition.joiner is LogicalOperator.OR:
                result = result or condition.holds(ctx)
            else:
                result = result and condition.holds(ctx)
        return result

    def signature(self, ctx: EvaluationContext, exclude: frozenset[str] = frozenset()) -> str:
        """Fingerprint of the state that made the chain true.

        Discrete fields contribute their value; volatile (clock-driven) fields
        contribute only whether their comparison holds, so that elapsed time
        alone never produces a new signature. Fields in ``exclude`` are skipped.
        """
        parts: list[str] = []
        seen: set[str] = set()
        for condition in self.conditions:
            if condition.path in exclude or condition.path in seen:
                continue
            seen.add(condition.path)
            if condition.spec is not None and condition.spec.volatile:
                parts.append(f"{condition.path}:{condition.operator}:{condition.holds(ctx)}")
            else:
                parts.append(f"{condition.path}={_signature_value(condition.resolve(ctx))}")
        if not parts:
            return "-"
        return hashlib.sha1("|".join(parts).encode()).hexdigest()[:16]


def _signature_value(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (set, frozenset)):
        return ",".join(sorted(str(v) for v in value))
    return repr(value)


def compile_chain(conditions: Sequence[RuleCondition]) -> ConditionChain:
    return ConditionChain(tuple(compile_condition(c) for c in conditions))


@dataclass(frozen=True)
class CompiledRule:
    rule: WorkflowRule
    chain: ConditionChain
    written: frozenset[str]

    @property
    def id(self) -> str:
        return self.rule.id

    @property
    def name(self) -> str:
        return self.rule.name

    @property
    def actions(self) -> tuple[RuleAction, ...]:
        return self.rule.actions

    def matches(self, ctx: EvaluationContext) -> bool:
        return self.chain.holds(ctx)

    def signature(self, ctx: EvaluationContext) -> str:
        return self.chain.signature(ctx, exclude=self.written)


def compile_rule(rule: WorkflowRule) -> CompiledRule:
    return CompiledRule(
        rule=rule,
        chain=compile_chain(rule.conditions),
        written=fields_written_by(rule.actions),
    )


# ---------------------------------------------------------------------------
# Placeholder rendering
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def render(template: str, ctx: EvaluationContext) -> str:
    """Fill ``{{field}}`` placeholders; unknown fields are left as written."""

    def substitute(match: re.Match[str]) -> str:
        value = resolve_field(match.group(1), ctx)
        if value is UNDEFINED:
            return match.group(0)
        return _display(value)

    return _PLACEHOLDER.sub(substitute, template)


def render_parameters(parameters: Any, ctx: EvaluationContext) -> Any:
    """Render every string inside an action's parameters."""
    if isinstance(parameters, str):
        return render(parameters, ctx)
    if isinstance(parameters, dict):
        return {key: render_parameters(value, ctx) for key, value in parameters.items()}
    if isinstance(parameters, list | tuple):
        return [render_parameters(value, ctx) for value in parameters]
    return parameters
