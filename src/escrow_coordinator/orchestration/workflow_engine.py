"""Workflow Rule Engine: periodic evaluation of dispute rules.

Each tick loads every OPEN/IN_REVIEW dispute and, for each enabled rule in
ascending priority, evaluates the rule's condition chain against a fresh
EvaluationContext. The escalation matrix runs after the rules; only its first
matching entry fires.

    engine = WorkflowEngine(repository, disputes, balancer, gateway, notifier,
                            fired_keys, clock)
    engine.start()          # background loop, one tick per interval
    await engine.run_once() # or drive ticks by hand
    await engine.stop()

Every action is claimed in the FiredKeyStore before it runs, under the key
``{rule_id}:{dispute_id}:{signature}:{action_index}``. The signature covers
the rule's condition fields that its own actions do not write, so a condition
that stays true never fires twice and a new qualifying state fires once more.

Field changes staged by one rule are written with a single save_dispute();
notifications, tasks, and status-change consequences are dispatched only
after that write succeeds. A delayed action is claimed when scheduled,
re-checked against fresh state when due, and dropped (claim released) if its
rule no longer holds. One whose write loses a race keeps its first due time
when the next tick schedules it again. Each tick also settles resolved
disputes whose transaction is still DISPUTED.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from escrow_coordinator.config import get_settings
from escrow_coordinator.domain.enums import (
    ActionType,
    DisputePriority,
    DisputeStatus,
    EventType,
)
from escrow_coordinator.domain.exceptions import (
    ConcurrencyConflictError,
    InvalidDisputeTransitionError,
    RepositoryUnavailableError,
)
from escrow_coordinator.domain.models import new_id
from escrow_coordinator.domain.sla import build_dispute_view
from escrow_coordinator.logging_config import get_logger
from escrow_coordinator.orchestration.conditions import (
    EvaluationContext,
    compile_rule,
    render_parameters,
)
from escrow_coordinator.orchestration.defaults import (
    DEFAULT_ESCALATION_MATRIX,
    DEFAULT_RULES,
)
from escrow_coordinator.orchestration.escalation import EscalationMatrix
from escrow_coordinator.schemas.transaction import dispute_payload
from escrow_coordinator.schemas.workflow import load_rules

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping
    from datetime import datetime

    from escrow_coordinator.config import Settings
    from escrow_coordinator.domain.models import Dispute, Transaction
    from escrow_coordinator.domain.ports import (
        Clock,
        EventGateway,
        FiredKeyStore,
        Notifier,
        Repository,
    )
    from escrow_coordinator.domain.sla import SLAConfig
    from escrow_coordinator.schemas.workflow import EscalationRule, RuleAction, WorkflowRule
    from escrow_coordinator.services.admin_balancer import AdminWorkloadBalancer
    from escrow_coordinator.services.dispute_service import DisputeService, StatusChange

logger = get_logger(__name__)

_STATUS_RANK: dict[DisputeStatus, int] = {
    DisputeStatus.OPEN: 0,
    DisputeStatus.IN_REVIEW: 1,
    DisputeStatus.RESOLVED: 2,
    DisputeStatus.CLOSED: 3,
}


class _Unit(Protocol):
    """A compiled workflow rule or escalation matrix entry."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def actions(self) -> tuple[RuleAction, ...]: ...

    def matches(self, ctx: EvaluationContext) -> bool: ...

    def signature(self, ctx: EvaluationContext) -> str: ...


@dataclass
class TickReport:
    """What one tick (or one batch of due delayed actions) did."""

    tick_id: str
    disputes: int = 0
    fired: int = 0
    skipped: int = 0
    scheduled: int = 0
    cancelled: int = 0
    failed: int = 0
    conflicts: int = 0
    settled: int = 0
    aborted: bool = False

    def summary(self) -> dict[str, Any]:
        return {
            "disputes": self.disputes,
            "fired": self.fired,
            "skipped": self.skipped,
            "scheduled": self.scheduled,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "settled": self.settled,
        }


@dataclass
class PendingAction:
    """A delayed action waiting for its due time."""

    key: str
    rule_id: str
    dispute_id: str
    index: int
    action: RuleAction
    due_at: datetime
    timer: asyncio.Task[None] | None = None


@dataclass(frozen=True)
class _Step:
    index: int
    action: RuleAction
    key: str


@dataclass
class _Effect:
    key: str
    step: _Step
    run: Callable[[Dispute], Awaitable[None]]


@dataclass
class _Plan:
    """Changes staged by one rule on a private copy of the dispute."""

    dispute: Dispute
    transaction: Transaction | None
    expected_version: int
    claimed: list[_Step] = field(default_factory=list)
    changes: list[StatusChange] = field(default_factory=list)
    effects: list[_Effect] = field(default_factory=list)
    dirty: bool = False


def configured_rules(
    settings: Settings | None = None,
) -> tuple[list[WorkflowRule], list[EscalationRule]]:
    """Rules and escalation matrix from settings.workflow_rules_path, else the defaults.

    A rules file without an "escalation_matrix" key keeps the default matrix.
    """
    settings = settings or get_settings()
    if not settings.workflow_rules_path:
        return list(DEFAULT_RULES), list(DEFAULT_ESCALATION_MATRIX)
    document = load_rules(settings.workflow_rules_path)
    matrix = document.escalation_matrix
    if matrix is None:
        matrix = list(DEFAULT_ESCALATION_MATRIX)
    logger.info(
        "workflow.rules_loaded",
        path=settings.workflow_rules_path,
        rules=len(document.rules),
        matrix_entries=len(matrix),
    )
    return document.rules, matrix


class WorkflowEngine:
    """Evaluates workflow rules and the escalation matrix against open disputes."""

    def __init__(
        self,
        repository: Repository,
        disputes: DisputeService,
        balancer: AdminWorkloadBalancer,
        gateway: EventGateway,
        notifier: Notifier,
        fired_keys: FiredKeyStore,
        clock: Clock,
        rules: Iterable[WorkflowRule] | None = None,
        escalation_matrix: Iterable[EscalationRule] | None = None,
        sla_configs: Mapping[DisputePriority, SLAConfig] | None = None,
        interval_seconds: float | None = None,
        fired_key_ttl_seconds: int | None = None,
        claim_grace_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        if rules is None or escalation_matrix is None:
            loaded_rules, loaded_matrix = configured_rules(settings)
            rules = loaded_rules if rules is None else rules
            escalation_matrix = loaded_matrix if escalation_matrix is None else escalation_matrix

        self._repository = repository
        self._disputes = disputes
        self._balancer = balancer
        self._gateway = gateway
        self._notifier = notifier
        self._fired_keys = fired_keys
        self._clock = clock
        self._sla_configs = sla_configs
        self._interval = (
            interval_seconds if interval_seconds is not None
            else settings.workflow_interval_seconds
        )
        self._fired_key_ttl = fired_key_ttl_seconds or settings.fired_key_ttl_seconds
        self._claim_grace = (
            claim_grace_seconds if claim_grace_seconds is not None
            else settings.scheduled_claim_grace_seconds
        )

        enabled = sorted((r for r in rules if r.enabled), key=lambda r: r.priority)
        self._rules = [compile_rule(r) for r in enabled]
        self._matrix = EscalationMatrix(escalation_matrix)
        self._units: dict[str, _Unit] = {u.id: u for u in [*self._rules, *self._matrix.entries]}

        self._stage_handlers: dict[
            ActionType,
            Callable[[_Unit, _Step, dict[str, Any], _Plan, AsyncExitStack], Awaitable[bool]],
        ] = {
            ActionType.AUTO_ESCALATE: self._stage_auto_escalate,
            ActionType.UPDATE_STATUS: self._stage_update_status,
            ActionType.SET_PRIORITY: self._stage_set_priority,
            ActionType.ASSIGN_ADMIN: self._stage_assign_admin,
            ActionType.SEND_NOTIFICATION: self._stage_notification,
            ActionType.SEND_EMAIL: self._stage_notification,
            ActionType.CREATE_TASK: self._stage_task,
        }

        self._tick_lock = asyncio.Lock()
        self._pending: dict[str, PendingAction] = {}
        # Delayed actions whose write lost a race; rescheduled against their first due time.
        self._overdue: dict[str, PendingAction] = {}
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def rule_ids(self) -> list[str]:
        return [rule.id for rule in self._rules]

    @property
    def pending_actions(self) -> list[PendingAction]:
        return sorted(self._pending.values(), key=lambda p: p.due_at)

    def start(self) -> None:
        """Start the background loop. Calling it twice is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="workflow-engine")
        logger.info(
            "workflow.started",
            interval_seconds=self._interval,
            rules=self.rule_ids,
            matrix_entries=len(self._matrix),
        )

    async def stop(self) -> None:
        """Cancel the loop and every pending timer.

        Claims of cancelled delayed actions are kept; they lapse after the
        action's delay plus the grace period, after which a later run
        schedules the action again if its rule still holds.
        """
        tasks = [p.timer for p in self._pending.values() if p.timer is not None]
        self._pending.clear()
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("workflow.stopped", cancelled_timers=len(tasks))

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("workflow.tick_failed")
            await self._clock.sleep(self._interval)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def run_once(self) -> TickReport:
        """Evaluate every open dispute once. Ticks never overlap.

        A RepositoryUnavailableError aborts the tick: claims of the rule in
        flight are released and the next tick starts over.
        """
        async with self._tick_lock:
            report = TickReport(tick_id=new_id()[:8])
            with structlog.contextvars.bound_contextvars(tick_id=report.tick_id):
                started = time.perf_counter()
                try:
                    open_disputes = await self._repository.list_open_disputes()
                    report.disputes = len(open_disputes)
                    for dispute in open_disputes:
                        await self._evaluate_dispute(dispute.id, report)
                    open_ids = {d.id for d in open_disputes}
                    for pending in list(self._pending.values()):
                        if pending.dispute_id not in open_ids:
                            await self._cancel(pending, report, reason="dispute no longer open")
                    self._overdue = {
                        key: pending
                        for key, pending in self._overdue.items()
                        if pending.dispute_id in open_ids
                    }
                    await self._settle_resolutions(report)
                except RepositoryUnavailableError as exc:
                    report.aborted = True
                    logger.error("workflow.tick_aborted", error=str(exc), **report.summary())
                    return report
                logger.info(
                    "workflow.tick_completed",
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    **report.summary(),
                )
                return report

    async def _settle_resolutions(self, report: TickReport) -> None:
        """Apply resolutions whose settlement did not land when the dispute resolved."""
        for dispute in await self._repository.list_unsettled_resolutions():
            try:
                if await self._disputes.settle(dispute) is not None:
                    report.settled += 1
            except RepositoryUnavailableError:
                raise
            except Exception:
                report.failed += 1
                logger.exception(
                    "workflow.settlement_failed",
                    dispute_id=dispute.id,
                    transaction_id=dispute.transaction_id,
                )

    async def _evaluate_dispute(self, dispute_id: str, report: TickReport) -> None:
        for unit in self._rules:
            ctx = await self._load_context(dispute_id)
            if ctx is None or not ctx.dispute.is_active:
                await self._cancel_for(dispute_id, report, reason="dispute no longer open")
                return
            await self._evaluate_unit(unit, ctx, report)

        ctx = await self._load_context(dispute_id)
        if ctx is None or not ctx.dispute.is_active:
            await self._cancel_for(dispute_id, report, reason="dispute no longer open")
            return
        matched = self._matrix.match(ctx)
        for entry in self._matrix.entries:
            if matched and entry is matched[0]:
                await self._evaluate_unit(entry, ctx, report)
            else:
                await self._cancel_for(
                    dispute_id, report, rule_id=entry.id, reason="entry no longer matches"
                )

    async def _evaluate_unit(self, unit: _Unit, ctx: EvaluationContext, report: TickReport) -> None:
        dispute_id = ctx.dispute.id
        try:
            if unit.matches(ctx):
                await self._run_unit(unit, ctx, report)
            else:
                await self._cancel_for(
                    dispute_id, report, rule_id=unit.id, reason="rule no longer matches"
                )
        except RepositoryUnavailableError:
            raise
        except Exception:
            report.failed += 1
            logger.exception("workflow.rule_failed", rule_id=unit.id, dispute_id=dispute_id)

    async def _run_unit(self, unit: _Unit, ctx: EvaluationContext, report: TickReport) -> None:
        """Claim the rule's actions, schedule the delayed ones, execute the rest."""
        dispute_id = ctx.dispute.id
        signature = unit.signature(ctx)
        keys: set[str] = set()
        steps: list[_Step] = []
        try:
            for index, action in enumerate(unit.actions):
                key = f"{unit.id}:{dispute_id}:{signature}:{index}"
                keys.add(key)
                if action.is_delayed:
                    await self._schedule(unit, dispute_id, _Step(index, action, key), report)
                elif await self._fired_keys.claim(key, self._fired_key_ttl):
                    steps.append(_Step(index, action, key))
                else:
                    report.skipped += 1
        except Exception:
            await self._release(steps)
            raise

        await self._cancel_for(
            dispute_id, report, rule_id=unit.id, keep=keys, reason="rule state changed"
        )
        if steps:
            await self._execute(unit, ctx, steps, report)

    # ------------------------------------------------------------------
    # Delayed actions
    # ------------------------------------------------------------------

    async def _schedule(
        self, unit: _Unit, dispute_id: str, step: _Step, report: TickReport
    ) -> None:
        if step.key in self._pending:
            report.skipped += 1
            return
        now = self._clock.now()
        delay = float((step.action.delay_minutes or 0) * 60)
        overdue = self._overdue.get(step.key)
        if overdue is not None:
            delay = max(0.0, (overdue.due_at - now).total_seconds())
        if not await self._fired_keys.claim(step.key, int(delay) + self._claim_grace):
            report.skipped += 1
            return
        self._overdue.pop(step.key, None)
        pending = PendingAction(
            key=step.key,
            rule_id=unit.id,
            dispute_id=dispute_id,
            index=step.index,
            action=step.action,
            due_at=now + timedelta(seconds=delay),
        )
        pending.timer = asyncio.create_task(self._timer(delay), name=f"workflow-timer:{step.key}")
        self._pending[step.key] = pending
        report.scheduled += 1
        logger.info(
            "workflow.action_scheduled",
            rule_id=unit.id,
            dispute_id=dispute_id,
            action=step.action.type.value,
            due_at=pending.due_at.isoformat(),
        )

    async def _timer(self, delay: float) -> None:
        await self._clock.sleep(delay)
        try:
            await self.fire_due_actions()
        except Exception:
            logger.exception("workflow.timer_failed")

    async def fire_due_actions(self) -> int:
        """Run every scheduled action whose due time has passed.

        Each action is re-checked against fresh state first. Returns the
        number of actions that fired.
        """
        async with self._tick_lock:
            now = self._clock.now()
            due = sorted(
                (p for p in self._pending.values() if p.due_at <= now), key=lambda p: p.due_at
            )
            report = TickReport(tick_id=new_id()[:8])
            for pending in due:
                if self._pending.pop(pending.key, None) is None:
                    continue
                if pending.timer is not None and pending.timer is not asyncio.current_task():
                    pending.timer.cancel()
                try:
                    await self._fire_pending(pending, report)
                except RepositoryUnavailableError as exc:
                    report.failed += 1
                    self._overdue[pending.key] = pending
                    await self._fired_keys.release(pending.key)
                    logger.error(
                        "workflow.delayed_action_failed",
                        rule_id=pending.rule_id,
                        dispute_id=pending.dispute_id,
                        error=str(exc),
                    )
            if due:
                logger.info("workflow.due_actions_processed", due=len(due), **report.summary())
            return report.fired

    async def _fire_pending(self, pending: PendingAction, report: TickReport) -> None:
        unit = self._units.get(pending.rule_id)
        ctx = await self._load_context(pending.dispute_id)
        if unit is None or ctx is None or not ctx.dispute.is_active or not unit.matches(ctx):
            report.cancelled += 1
            await self._fired_keys.release(pending.key)
            logger.info(
                "workflow.delayed_action_cancelled",
                rule_id=pending.rule_id,
                dispute_id=pending.dispute_id,
                action=pending.action.type.value,
                reason="rule no longer matches",
            )
            return
        step = _Step(pending.index, pending.action, pending.key)
        conflicts = report.conflicts
        landed = await self._execute(unit, ctx, [step], report)
        if step in landed:
            await self._fired_keys.refresh(step.key, self._fired_key_ttl)
        elif report.conflicts > conflicts:
            self._overdue[pending.key] = pending

    async def _cancel_for(
        self,
        dispute_id: str,
        report: TickReport,
        rule_id: str | None = None,
        keep: set[str] | None = None,
        reason: str = "",
    ) -> None:
        def selected(pending: PendingAction) -> bool:
            if pending.dispute_id != dispute_id:
                return False
            if rule_id is not None and pending.rule_id != rule_id:
                return False
            return keep is None or pending.key not in keep

        for key, pending in list(self._overdue.items()):
            if selected(pending):
                del self._overdue[key]
        for pending in list(self._pending.values()):
            if selected(pending):
                await self._cancel(pending, report, reason)

    async def _cancel(self, pending: PendingAction, report: TickReport, reason: str) -> None:
        self._pending.pop(pending.key, None)
        if pending.timer is not None:
            pending.timer.cancel()
        await self._fired_keys.release(pending.key)
        report.cancelled += 1
        logger.info(
            "workflow.delayed_action_cancelled",
            rule_id=pending.rule_id,
            dispute_id=pending.dispute_id,
            action=pending.action.type.value,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Execution: stage, commit once, then dispatch
    # ------------------------------------------------------------------

    async def _execute(
        self, unit: _Unit, ctx: EvaluationContext, steps: list[_Step], report: TickReport
    ) -> list[_Step]:
        """Apply already-claimed actions of one rule. Returns the steps that landed."""
        plan = _Plan(
            dispute=ctx.dispute.copy(),
            transaction=ctx.transaction,
            expected_version=ctx.dispute.version,
        )
        try:
            async with AsyncExitStack() as stack:
                for step in steps:
                    plan.claimed.append(step)
                    await self._stage(unit, step, plan, stack, report)
                saved = await self._commit(plan) if plan.dirty else plan.dispute
        except ConcurrencyConflictError as exc:
            report.conflicts += 1
            await self._release(plan.claimed)
            logger.warning(
                "workflow.write_conflict",
                rule_id=unit.id,
                dispute_id=ctx.dispute.id,
                error=exc.message,
            )
            return []
        except RepositoryUnavailableError:
            await self._release(plan.claimed)
            raise

        for change in plan.changes:
            change.dispute = saved
            await self._disputes.finalize(change)
        if plan.dirty and not plan.changes:
            await self._broadcast(saved)

        for effect in plan.effects:
            try:
                await effect.run(saved)
            except Exception:
                self._fail(unit, effect.step, saved.id, report)
                plan.claimed.remove(effect.step)
                await self._fired_keys.release(effect.key)

        for step in plan.claimed:
            report.fired += 1
            logger.info(
                "workflow.action_fired",
                rule_id=unit.id,
                dispute_id=saved.id,
                action=step.action.type.value,
                index=step.index,
            )
        return plan.claimed

    async def _stage(
        self,
        unit: _Unit,
        step: _Step,
        plan: _Plan,
        stack: AsyncExitStack,
        report: TickReport,
    ) -> None:
        params = render_parameters(dict(step.action.parameters), self._plan_context(plan))
        handler = self._stage_handlers[step.action.type]
        try:
            keep = await handler(unit, step, params, plan, stack)
        except RepositoryUnavailableError:
            raise
        except Exception:
            self._fail(unit, step, plan.dispute.id, report)
            keep = False
        if not keep:
            plan.claimed.remove(step)
            await self._fired_keys.release(step.key)

    async def _commit(self, plan: _Plan) -> Dispute:
        plan.dispute.version = plan.expected_version + 1
        plan.dispute.updated_at = self._clock.now()
        return await self._repository.save_dispute(
            plan.dispute, expected_version=plan.expected_version
        )

    # --- Stage handlers: return False to give the claim back ---

    async def _stage_auto_escalate(
        self, unit: _Unit, step: _Step, params: dict[str, Any], plan: _Plan, stack: AsyncExitStack
    ) -> bool:
        target = DisputeStatus(params.get("to_status", DisputeStatus.IN_REVIEW))
        current = plan.dispute.status
        reachable = _STATUS_RANK[current] < _STATUS_RANK[target]
        if reachable:
            try:
                self._matrix.escalate(plan.dispute, target)
            except InvalidDisputeTransitionError:
                reachable = False
        if not reachable:
            # Already there (or past it): the escalation has nothing left to do.
            logger.info(
                "workflow.escalation_skipped",
                rule_id=unit.id,
                dispute_id=plan.dispute.id,
                status=current.value,
                to_status=target.value,
            )
            return True
        self._apply_status(plan, target, params.get("reason", unit.name))
        return True

    async def _stage_update_status(
        self, unit: _Unit, step: _Step, params: dict[str, Any], plan: _Plan, stack: AsyncExitStack
    ) -> bool:
        target = params.get("status") or params.get("to_status")
        if target is None:
            raise ValueError("UPDATE_STATUS needs a 'status' parameter")
        self._apply_status(plan, target, params.get("reason", unit.name))
        return True

    async def _stage_set_priority(
        self, unit: _Unit, step: _Step, params: dict[str, Any], plan: _Plan, stack: AsyncExitStack
    ) -> bool:
        priority = DisputePriority(params["priority"])
        if plan.dispute.priority is not priority:
            plan.dispute.priority = priority
            plan.dirty = True
        return True

    async def _stage_assign_admin(
        self, unit: _Unit, step: _Step, params: dict[str, Any], plan: _Plan, stack: AsyncExitStack
    ) -> bool:
        if plan.dispute.assigned_admin_id is not None:
            return True
        admin = await stack.enter_async_context(self._balancer.provisional(plan.dispute))
        if admin is None:
            logger.info(
                "workflow.no_admin_available",
                rule_id=unit.id,
                dispute_id=plan.dispute.id,
                dispute_type=plan.dispute.dispute_type.value,
            )
            return False
        plan.dirty = True
        return True

    async def _stage_notification(
        self, unit: _Unit, step: _Step, params: dict[str, Any], plan: _Plan, stack: AsyncExitStack
    ) -> bool:
        recipients = self._recipients(params.get("recipients", ["admin"]), plan.dispute)
        if not recipients:
            logger.info(
                "workflow.no_recipients",
                rule_id=unit.id,
                dispute_id=plan.dispute.id,
                requested=params.get("recipients"),
            )
            return False
        template = params.get("template") or step.action.type.value
        metadata = {k: v for k, v in params.items() if k not in ("recipients", "template")}
        metadata.update(
            dispute_id=plan.dispute.id,
            transaction_id=plan.dispute.transaction_id,
            rule_id=unit.id,
        )
        if step.action.type is ActionType.SEND_EMAIL:
            metadata["channel"] = "email"

        async def send(saved: Dispute) -> None:
            for user_id in recipients:
                await self._notifier.notify(user_id, template, metadata)

        plan.effects.append(_Effect(key=step.key, step=step, run=send))
        return True

    async def _stage_task(
        self, unit: _Unit, step: _Step, params: dict[str, Any], plan: _Plan, stack: AsyncExitStack
    ) -> bool:
        assignees = self._recipients([params.get("assignee", "admin")], plan.dispute)
        payload = {k: v for k, v in params.items() if k != "assignee"}
        payload.update(
            task_id=new_id(),
            title=params.get("title") or unit.name,
            assignee_id=assignees[0] if assignees else None,
            dispute_id=plan.dispute.id,
            transaction_id=plan.dispute.transaction_id,
            rule_id=unit.id,
            created_at=self._clock.now().isoformat(),
        )

        async def create(saved: Dispute) -> None:
            await self._gateway.emit(EventType.TASK_CREATED, payload)

        plan.effects.append(_Effect(key=step.key, step=step, run=create))
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_status(self, plan: _Plan, target: DisputeStatus | str, reason: str) -> None:
        plan.changes.append(self._disputes.apply_status(plan.dispute, target, reason))
        plan.dirty = True

    @staticmethod
    def _recipients(requested: Iterable[str] | str, dispute: Dispute) -> list[str]:
        """Map recipient roles (admin, counterparty, raiser, parties) to user ids."""
        if isinstance(requested, str):
            requested = [requested]
        resolved: list[str] = []
        roles: dict[str, list[str | None]] = {
            "admin": [dispute.assigned_admin_id],
            "counterparty": [dispute.accused_id],
            "accused": [dispute.accused_id],
            "raiser": [dispute.raiser_id],
            "parties": [dispute.raiser_id, dispute.accused_id],
        }
        for recipient in requested:
            for user_id in roles.get(str(recipient).lower(), [recipient]):
                if user_id and user_id not in resolved:
                    resolved.append(user_id)
        return resolved

    async def _load_context(self, dispute_id: str) -> EvaluationContext | None:
        dispute = await self._repository.get_dispute(dispute_id)
        if dispute is None:
            return None
        transaction = await self._repository.get_transaction(dispute.transaction_id)
        return self._context(dispute, transaction)

    def _context(self, dispute: Dispute, transaction: Transaction | None) -> EvaluationContext:
        view = build_dispute_view(dispute, self._clock.now(), self._sla_configs)
        return EvaluationContext(view=view, transaction=transaction)

    def _plan_context(self, plan: _Plan) -> EvaluationContext:
        return self._context(plan.dispute, plan.transaction)

    async def _release(self, steps: Iterable[_Step]) -> None:
        for step in list(steps):
            await self._fired_keys.release(step.key)

    async def _broadcast(self, dispute: Dispute) -> None:
        try:
            await self._gateway.emit(EventType.DISPUTE_UPDATED, dispute_payload(dispute))
        except Exception:
            logger.exception("workflow.broadcast_failed", dispute_id=dispute.id)

    @staticmethod
    def _fail(unit: _Unit, step: _Step, dispute_id: str, report: TickReport) -> None:
        report.failed += 1
        logger.exception(
            "workflow.action_failed",
            rule_id=unit.id,
            dispute_id=dispute_id,
            action=step.action.type.value,
            index=step.index,
        )
