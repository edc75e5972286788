"""Escalation Matrix: declarative dispute status moves.

Each entry says "move a dispute from from_status to to_status when these
conditions hold". Entries are checked in declaration order; the engine fires
the first one that matches, since any status move invalidates the others.

Usage:
    matrix = EscalationMatrix(DEFAULT_ESCALATION_MATRIX)
    for entry in matrix.match(ctx):
        target = matrix.escalate(ctx.dispute, entry.rule.to_status)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from escrow_coordinator.domain.enums import ActionType, DisputeStatus
from escrow_coordinator.domain.exceptions import InvalidDisputeTransitionError
from escrow_coordinator.domain.state_machine import next_dispute_status
from escrow_coordinator.orchestration.conditions import (
    ConditionChain,
    compile_chain,
    fields_written_by,
)
from escrow_coordinator.schemas.workflow import RuleAction

if TYPE_CHECKING:
    from collections.abc import Iterable

    from escrow_coordinator.domain.models import Dispute
    from escrow_coordinator.orchestration.conditions import EvaluationContext
    from escrow_coordinator.schemas.workflow import EscalationRule


@dataclass(frozen=True)
class CompiledEscalation:
    rule: EscalationRule
    chain: ConditionChain
    written: frozenset[str]

    @property
    def id(self) -> str:
        return self.rule.id

    @property
    def name(self) -> str:
        return f"Escalate {self.rule.from_status} to {self.rule.to_status}"

    @property
    def actions(self) -> tuple[RuleAction, ...]:
        """The status move itself, followed by the entry's extra actions."""
        move = RuleAction(
            type=ActionType.AUTO_ESCALATE,
            parameters={
                "to_status": self.rule.to_status.value,
                "reason": f"Escalation matrix: {self.rule.from_status} -> {self.rule.to_status}",
            },
        )
        return (move, *self.rule.actions)

    def matches(self, ctx: EvaluationContext) -> bool:
        return ctx.dispute.status is self.rule.from_status and self.chain.holds(ctx)

    def signature(self, ctx: EvaluationContext) -> str:
        return self.chain.signature(ctx, exclude=self.written)


class EscalationMatrix:
    def __init__(self, entries: Iterable[EscalationRule] = ()) -> None:
        self._entries = tuple(
            CompiledEscalation(
                rule=entry,
                chain=compile_chain(entry.conditions),
                written=fields_written_by(entry.actions) | {"status"},
            )
            for entry in entries
        )

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[CompiledEscalation, ...]:
        return self._entries

    def match(self, ctx: EvaluationContext) -> list[CompiledEscalation]:
        """Entries applicable to the dispute right now, in declaration order."""
        return [entry for entry in self._entries if entry.matches(ctx)]

    @staticmethod
    def escalate(dispute: Dispute, to_status: DisputeStatus) -> DisputeStatus:
        """Validate a move against the dispute state machine and return the new status.

        Raises:
            InvalidDisputeTransitionError: If the move is not on the dispute graph.
        """
        try:
            return DisputeStatus(next_dispute_status(dispute.status.value, to_status.value))
        except (TransitionNotAllowed, ValueError) as err:
            raise InvalidDisputeTransitionError(dispute.status.value, to_status.value) from err
