"""Router (Maestro): the orchestration state machine.

Drives ``dispatch → parse → validate → merge → decide`` until a workflow is
terminated or blocked. Malformed reports and boundary failures are retried
within configured bounds; everything else escalates to Blocked with its
error kind recorded in history.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

import anyio

from .config import Config
from .db import Database
from .dispatcher import Dispatcher
from .errors import (
    DispatchTimeout,
    MaestroError,
    ModeExecutionError,
    NotFoundError,
    ParseError,
    RoutingMismatchError,
    StepBudgetExceeded,
    ValidationError,
    WorkflowStateError,
)
from .models import (
    Directive,
    HandoffReport,
    HistoryKind,
    Mode,
    Objective,
    ReportKind,
    ReportStatus,
    RouterState,
    RoutingAction,
    RoutingDecision,
    Task,
    TaskContext,
    TaskStatus,
    WorkflowOutcome,
)
from .notifier import Notifier
from .parser import parse_report
from .registry import ModeRegistry
from .scheduler import pick_first_mode
from .state import WorkflowState, WorkflowStateStore
from .validator import validate_report_for_task

logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"
HOLD_SUMMARY = "held for stakeholder approval"
APPROVAL_INSTRUCTION = (
    "Obtain explicit stakeholder approval for this design, then resubmit the "
    "Design Handoff with an `Approval: Approved` field."
)


class Maestro:
    """Central coordinator for one workflow."""

    def __init__(
        self,
        registry: ModeRegistry,
        dispatcher: Dispatcher,
        store: WorkflowStateStore,
        db: Database,
        config: Config | None = None,
        notifier: Notifier | None = None,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.store = store
        self.db = db
        self.config = config or Config()
        self.notifier = notifier
        self.state = RouterState.IDLE
        self.objective = ""
        self.category = ""
        self.constraints: tuple[str, ...] = ()
        self._task_seq = 0
        self._steps = 0
        self._in_flight: dict[str, Task] = {}
        self._cancel_scope: anyio.CancelScope | None = None
        self._cancel_reason = ""

    @property
    def workflow_id(self) -> str:
        return self.store.workflow_id

    @classmethod
    async def restore(
        cls,
        workflow_id: str,
        registry: ModeRegistry,
        dispatcher: Dispatcher,
        db: Database,
        config: Config | None = None,
        notifier: Notifier | None = None,
        markdown_path: str | Path | None = None,
    ) -> Maestro:
        """Rebuild a router for a persisted workflow."""
        row = await db.get_workflow(workflow_id)
        if row is None:
            raise NotFoundError(workflow_id, f"Unknown workflow: '{workflow_id}'")
        store = WorkflowStateStore(db, workflow_id, markdown_path)
        await store.load()
        maestro = cls(registry, dispatcher, store, db, config, notifier)
        maestro.objective = row["objective"]
        maestro.category = row["category"]
        maestro.constraints = tuple(row["constraints"])
        maestro.state = RouterState(row["state"])
        maestro._task_seq = len(await db.get_tasks(workflow_id))
        return maestro

    # ---------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------

    async def run(self, objective: Objective) -> WorkflowOutcome:
        """Start the workflow. Raises NotFoundError when no mode can take it."""
        mode = self._first_mode(objective)
        self.objective = objective.text
        self.category = objective.category
        self.constraints = tuple(objective.constraints)

        if await self.db.get_workflow(self.workflow_id) is None:
            await self.db.create_workflow(
                self.workflow_id, objective.text, objective.category, list(objective.constraints),
            )
        await self.db.log_event(self.workflow_id, "start", {
            "mode": mode.name, "category": objective.category,
        })
        logger.info("Workflow %s: starting with %s", self.workflow_id, mode.name)

        task = self._new_task(mode.name, "", objective.category)
        self._steps = 0
        return await self._drive(lambda: self._loop(task))

    async def resume(self, directive: Directive) -> WorkflowOutcome:
        """Continue a Blocked workflow at the mode named by an external directive."""
        if self.state is not RouterState.BLOCKED:
            raise WorkflowStateError(
                f"Workflow {self.workflow_id} is {self.state.value}, not blocked"
            )
        mode = self.registry.lookup(directive.mode)
        category = directive.category or self.category
        await self.store.record(
            HistoryKind.DIRECTIVE,
            f"resume at {mode.name}: {directive.instruction}".rstrip(": "),
            mode=mode.name,
            detail={"instruction": directive.instruction, "category": category},
        )
        await self.db.log_event(self.workflow_id, "resume", {"mode": mode.name})
        logger.info("Workflow %s: resumed at %s", self.workflow_id, mode.name)

        task = self._new_task(mode.name, directive.instruction, category)
        self._steps = 0
        return await self._drive(lambda: self._loop(task))

    async def fan_out(self, directives: Sequence[Directive]) -> WorkflowOutcome:
        """Dispatch independent tasks concurrently against one snapshot, then join."""
        if not directives:
            raise ValueError("fan_out needs at least one directive")
        if self.state not in (RouterState.IDLE, RouterState.BLOCKED):
            raise WorkflowStateError(
                f"Workflow {self.workflow_id} is {self.state.value}, not idle or blocked"
            )
        modes = [self.registry.lookup(d.mode) for d in directives]
        tasks = [
            self._new_task(mode.name, d.instruction, d.category or self.category)
            for mode, d in zip(modes, directives)
        ]
        if self.state is RouterState.IDLE and await self.db.get_workflow(self.workflow_id) is None:
            await self.db.create_workflow(self.workflow_id, self.objective, self.category)
        await self.store.record(
            HistoryKind.DIRECTIVE,
            "fan out to " + ", ".join(t.target_mode for t in tasks),
            detail={"branches": [
                {"task": t.id, "mode": t.target_mode, "instruction": t.instruction,
                 "category": t.context.category}
                for t in tasks
            ]},
        )
        await self.db.log_event(self.workflow_id, "fan_out", {"tasks": [t.id for t in tasks]})
        logger.info("Workflow %s: fan-out to %d task(s)", self.workflow_id, len(tasks))

        self._steps = 0
        return await self._drive(lambda: self._fan_out(tasks))

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Cancel the in-flight run. Returns False when nothing is running."""
        if self._cancel_scope is None:
            return False
        self._cancel_reason = reason
        self._cancel_scope.cancel()
        return True

    # ---------------------------------------------------------------
    # Routing
    # ---------------------------------------------------------------

    def decide(self, report: HandoffReport, task: Task) -> RoutingDecision:
        """Next step for an accepted report."""
        if report.status is ReportStatus.BLOCKED:
            return RoutingDecision(
                action=RoutingAction.BLOCK,
                rationale="mode reported blocked: " + "; ".join(report.open_questions),
            )

        if report.kind is ReportKind.DESIGN_HANDOFF and not report.approved:
            return RoutingDecision(
                action=RoutingAction.HOLD,
                rationale=HOLD_SUMMARY,
                next_mode=task.target_mode,
                instruction=APPROVAL_INSTRUCTION,
                category=task.context.category,
            )

        rec = report.recommendation
        if rec is None:
            return RoutingDecision(
                action=RoutingAction.TERMINATE,
                rationale=f"{report.kind.value} completed with no further recommendation",
            )

        try:
            mode = self.registry.lookup(rec.next_mode)
        except NotFoundError as exc:
            return RoutingDecision(
                action=RoutingAction.BLOCK, rationale=str(exc), error_kind=exc.kind,
            )

        # The work category comes from the objective or the last directive.
        # A recommended category can only add a requirement, never replace it.
        category = task.context.category or self.category
        for required in dict.fromkeys(c for c in (category, rec.category) if c):
            if not mode.accepts(required):
                exc = RoutingMismatchError(mode.name, required, mode.capabilities)
                return RoutingDecision(
                    action=RoutingAction.BLOCK, rationale=str(exc), error_kind=exc.kind,
                )

        return RoutingDecision(
            action=RoutingAction.DISPATCH,
            rationale=f"{report.mode or task.target_mode} recommends {mode.name}",
            next_mode=mode.name,
            instruction=rec.instruction,
            category=category,
        )

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    def _first_mode(self, objective: Objective) -> Mode:
        if objective.mode:
            return self.registry.lookup(objective.mode)
        candidates = self.registry.find_by_capability(objective.category)
        mode = pick_first_mode(candidates, design_first=self.config.router.design_first)
        if mode is None:
            raise NotFoundError(
                objective.category,
                f"No mode can take '{objective.category or '(no category)'}' work",
            )
        return mode

    def _new_task(self, mode: str, instruction: str, category: str) -> Task:
        self._task_seq += 1
        return Task(
            id=f"{self.workflow_id}-t{self._task_seq:03d}",
            workflow_id=self.workflow_id,
            target_mode=mode,
            objective=self.objective,
            instruction=instruction,
            context=TaskContext(category=category, constraints=list(self.constraints)),
        )

    async def _drive(self, step: Callable[[], Awaitable[WorkflowOutcome]]) -> WorkflowOutcome:
        outcome: WorkflowOutcome | None = None
        with anyio.CancelScope() as scope:
            self._cancel_scope = scope
            outcome = await step()
        self._cancel_scope = None
        if outcome is None:
            outcome = await self._cancelled()
        return outcome

    async def _loop(self, task: Task) -> WorkflowOutcome:
        while True:
            if self._steps >= self.config.router.max_steps:
                exc = StepBudgetExceeded(self.config.router.max_steps)
                return await self._block(str(exc), exc.kind, task)
            self._steps += 1

            try:
                report = await self._execute(task)
            except MaestroError as exc:
                return await self._block(f"{task.id}: {exc}", exc.kind, task)

            decision = self.decide(report, task)
            outcome = await self._apply_decision(decision, task)
            if outcome is not None:
                return outcome
            task = self._new_task(decision.next_mode, decision.instruction, decision.category)

    async def _fan_out(self, tasks: list[Task]) -> WorkflowOutcome:
        if self._steps + len(tasks) > self.config.router.max_steps:
            exc = StepBudgetExceeded(self.config.router.max_steps)
            return await self._block(str(exc), exc.kind)
        self._steps += len(tasks)

        snapshot = self.store.snapshot()
        failures: list[tuple[Task, MaestroError]] = []

        async def branch(task: Task) -> None:
            try:
                await self._execute(task, snapshot)
            except MaestroError as exc:
                failures.append((task, exc))

        async with anyio.create_task_group() as tg:
            for task in tasks:
                tg.start_soon(branch, task)

        # Join: route on the reports in the order they were accepted
        by_id = {t.id: t for t in tasks}
        accepted = [
            (by_id[h.task_id], h.report)
            for h in self.store.snapshot().history
            if h.kind is HistoryKind.REPORT and h.task_id in by_id and h.report is not None
        ]

        for task, report in accepted:
            if report.status is ReportStatus.BLOCKED:
                decision = self.decide(report, task)
                return await self._apply_decision(decision, task)
        if failures:
            task, exc = failures[0]
            return await self._block(f"{task.id}: {exc}", exc.kind, task)

        task, report = accepted[-1]
        decision = self.decide(report, task)
        outcome = await self._apply_decision(decision, task)
        if outcome is not None:
            return outcome
        next_task = self._new_task(decision.next_mode, decision.instruction, decision.category)
        return await self._loop(next_task)

    async def _execute(self, task: Task, snapshot: WorkflowState | None = None) -> HandoffReport:
        """Dispatch until a report is accepted; raises once retries are exhausted."""
        router_cfg = self.config.router
        mode = self.registry.lookup(task.target_mode)
        report_failures = 0
        dispatch_failures = 0
        self._in_flight[task.id] = task

        while True:
            await self._transition(RouterState.DISPATCHING, mode.name)
            handle = self.dispatcher.dispatch(task, snapshot or self.store.snapshot())
            await self.db.upsert_task(task)
            await self.db.log_event(self.workflow_id, "dispatch", {
                "task": task.id, "mode": mode.name, "attempt": task.attempt,
            })

            self.state = RouterState.AWAITING_REPORT
            try:
                raw = await handle.result()
            except (DispatchTimeout, ModeExecutionError) as exc:
                await self._fail_task(task, exc)
                dispatch_failures += 1
                if dispatch_failures > router_cfg.dispatch_retry_limit:
                    self._in_flight.pop(task.id, None)
                    raise
                logger.warning("%s: %s, retrying (%d/%d)", task.id, exc,
                               dispatch_failures, router_cfg.dispatch_retry_limit)
                await self.db.log_event(self.workflow_id, "retry", {
                    "task": task.id, "error_kind": exc.kind, "reason": str(exc),
                })
                continue

            self.state = RouterState.EVALUATING
            try:
                report = parse_report(raw, task_id=task.id, mode=mode.name)
                validate_report_for_task(report, task)
            except (ParseError, ValidationError) as exc:
                await self._fail_task(task, exc)
                report_failures += 1
                if report_failures > router_cfg.retry_limit:
                    self._in_flight.pop(task.id, None)
                    raise
                task.context.corrective_notes.append(f"Attempt {task.attempt}: {exc}")
                logger.warning("%s: rejected report (%s), retrying (%d/%d)", task.id,
                               exc.kind, report_failures, router_cfg.retry_limit)
                await self.db.log_event(self.workflow_id, "retry", {
                    "task": task.id, "error_kind": exc.kind, "reason": str(exc),
                })
                continue

            await self.store.apply_report(report, mode)
            self._in_flight.pop(task.id, None)
            task.status = TaskStatus.COMPLETED
            await self.db.upsert_task(task)
            await self.db.log_event(self.workflow_id, "report", {
                "task": task.id, "kind": report.kind.value, "status": report.status.value,
            })
            return report

    async def _fail_task(self, task: Task, exc: MaestroError) -> None:
        task.status = TaskStatus.FAILED
        task.failure_reason = f"{exc.kind}: {exc}"
        await self.db.upsert_task(task)

    async def _apply_decision(self, decision: RoutingDecision, task: Task) -> WorkflowOutcome | None:
        """Record a decision; returns the outcome when the run ends here."""
        await self.db.log_event(self.workflow_id, "decision", {
            "task": task.id, **decision.to_dict(),
        })
        if decision.action is RoutingAction.BLOCK:
            return await self._block(
                decision.rationale, decision.error_kind, task, decision,
            )
        if decision.action is RoutingAction.TERMINATE:
            return await self._terminate(decision, task)

        kind = HistoryKind.HOLD if decision.action is RoutingAction.HOLD else HistoryKind.DECISION
        summary = (
            HOLD_SUMMARY if kind is HistoryKind.HOLD
            else f"dispatch {decision.next_mode}: {decision.rationale}"
        )
        await self.store.record(
            kind, summary, task_id=task.id, mode=task.target_mode, detail=decision.to_dict(),
        )
        logger.info("%s → %s (%s)", task.id, decision.next_mode, decision.action.value)
        return None

    async def _transition(self, state: RouterState, mode: str = "", reason: str = "",
                          error_kind: str = "") -> None:
        self.state = state
        await self.db.update_workflow(self.workflow_id, state.value, mode, reason, error_kind)

    async def _block(
        self,
        reason: str,
        error_kind: str = "",
        task: Task | None = None,
        decision: RoutingDecision | None = None,
    ) -> WorkflowOutcome:
        mode = task.target_mode if task else ""
        await self.store.record(
            HistoryKind.BLOCKED, reason, task_id=task.id if task else "", mode=mode,
            error_kind=error_kind,
            detail=decision.to_dict() if decision else None,
        )
        await self._transition(RouterState.BLOCKED, mode, reason, error_kind)
        await self.db.log_event(self.workflow_id, "blocked", {
            "reason": reason, "error_kind": error_kind,
        })
        logger.warning("Workflow %s blocked%s: %s", self.workflow_id,
                       f" [{error_kind}]" if error_kind else "", reason)
        outcome = WorkflowOutcome(
            workflow_id=self.workflow_id,
            state=RouterState.BLOCKED,
            reason=reason,
            error_kind=error_kind,
            decision=decision,
            steps=self._steps,
        )
        await self._notify("workflow.blocked", outcome)
        return outcome

    async def _terminate(self, decision: RoutingDecision, task: Task) -> WorkflowOutcome:
        await self.store.record(
            HistoryKind.TERMINATED, decision.rationale, task_id=task.id, mode=task.target_mode,
        )
        await self._transition(RouterState.TERMINATED, task.target_mode, decision.rationale)
        await self.db.log_event(self.workflow_id, "terminated", {"task": task.id})
        logger.info("Workflow %s terminated after %d step(s)", self.workflow_id, self._steps)
        outcome = WorkflowOutcome(
            workflow_id=self.workflow_id,
            state=RouterState.TERMINATED,
            reason=decision.rationale,
            decision=decision,
            steps=self._steps,
        )
        await self._notify("workflow.terminated", outcome)
        return outcome

    async def _cancelled(self) -> WorkflowOutcome:
        reason = self._cancel_reason or "cancelled"
        accepted = self.store.snapshot().accepted_task_ids()
        for task in list(self._in_flight.values()):
            if task.id in accepted:
                task.status = TaskStatus.COMPLETED
            else:
                task.status = TaskStatus.FAILED
                task.failure_reason = "cancelled"
                await self.store.record(
                    HistoryKind.CANCELLED, reason, task_id=task.id, mode=task.target_mode,
                )
            await self.db.upsert_task(task)
        self._in_flight.clear()
        self._cancel_reason = ""
        return await self._block(reason, CANCELLED)

    async def _notify(self, event: str, outcome: WorkflowOutcome) -> None:
        if self.notifier is not None:
            await self.notifier.notify(event, outcome)
