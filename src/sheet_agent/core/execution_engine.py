"""Plan-driven execution engine.

Runs plan steps strictly in order. Every step goes through pre-execution
rules, a guarded tool call, post-write verification and post-execution
rules; failures become signals, signals become one decision, and the
decision drives retry, rollback, replanning or escalation to the user.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sheet_agent.config import EngineConfig
from sheet_agent.core.control import FailureTracker, TaskControl
from sheet_agent.core.errors import PlannerParseError, ReplanExhaustedError
from sheet_agent.core.ledger import LedgerStore
from sheet_agent.core.models import (
    Cancelled,
    Completed,
    DecisionAction,
    ErrorKind,
    ExecutionPlan,
    Failed,
    OperationRecord,
    PendingClarification,
    PendingConfirmation,
    PlanStep,
    RulePhase,
    Severity,
    StepStatus,
    Task,
    TaskStatus,
    ToolInvocationResult,
    ValidationSignal,
)
from sheet_agent.core.operations import OperationExecutor
from sheet_agent.core.plan_validator import PlanValidationResult, PlanValidator
from sheet_agent.core.planning import PlannerGateway, build_plan_request, parse_plan
from sheet_agent.core.recovery import RecoveryManager
from sheet_agent.core.replanner import Replanner
from sheet_agent.core.signals import SignalDecisionResolver
from sheet_agent.core.snapshot import SnapshotManager, affected_region
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.validation_rules import ValidationRuleEngine, default_rules
from sheet_agent.core.workbook import ResourceReader
from sheet_agent.utils import constants

if TYPE_CHECKING:
    from sheet_agent.core.models import Outcome
    from sheet_agent.core.reactive_loop import ReactiveLoop


@dataclass
class _RunState:
    """Per-run bookkeeping; discarded when ``run`` returns."""

    control: TaskControl
    tracker: FailureTracker
    warnings: list[str] = field(default_factory=list)


class ExecutionEngine:
    """Execute a plan against the document with guardrails.

    Collaborators are injected; nothing is read from module-level state.

    Args:
        registry: Tools available to plans
        gateway: Planner gateway used for planning and replanning
        reader: Read access to the document
        rules: Validation rule engine (built-in rules when omitted)
        resolver: Signal decision resolver
        config: Engine limits
        validator: Plan validator
        fallback: Reactive loop for degraded single-step execution
        ledger_store: Persists each task's ledger when it finishes
    """

    def __init__(
        self,
        registry: ToolRegistry,
        gateway: PlannerGateway,
        reader: ResourceReader,
        rules: ValidationRuleEngine | None = None,
        resolver: SignalDecisionResolver | None = None,
        config: EngineConfig | None = None,
        validator: PlanValidator | None = None,
        fallback: "ReactiveLoop | None" = None,
        ledger_store: LedgerStore | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.config = config or EngineConfig()
        self.registry = registry
        self.gateway = gateway
        self.reader = reader
        self.rules = rules or ValidationRuleEngine(default_rules(), reader=reader)
        self.resolver = resolver or SignalDecisionResolver()
        self.validator = validator or PlanValidator(
            registry, large_range_threshold=self.config.large_range_threshold
        )
        self.invoker = ToolInvoker(registry)
        self.snapshots = SnapshotManager(reader, self.invoker, registry)
        self.operations = OperationExecutor(
            registry, self.invoker, reader, self.snapshots, self.config.verify_writes
        )
        self.recovery = RecoveryManager(registry, reader)
        self.replanner = Replanner(
            gateway,
            registry,
            max_attempts=self.config.max_replan_attempts,
            output_limit=self.config.completed_output_limit,
        )
        self.fallback = fallback
        self.ledger_store = ledger_store

    # --- public API ---

    async def plan(self, task: Task) -> ExecutionPlan:
        """Ask the planner for a plan.

        Raises:
            PlannerParseError: If the planner output is unusable
        """
        context = "\n".join(task.extra_context)
        response = await self.gateway.complete(
            build_plan_request(task.request, self.registry.describe(), context)
        )
        plan = parse_plan(response)
        task.add_log("plan", thought=f"Planned {len(plan.steps)} step(s): {plan.intent}")
        self.logger.info(f"Task {task.id}: planned {len(plan.steps)} step(s)")
        return plan

    async def run(self, task: Task, control: TaskControl | None = None) -> "Outcome":
        """Run a task from its resume point until it finishes or suspends.

        Args:
            task: Task to run; a plan is requested when it has none
            control: Pause/cancel handle checked between steps

        Returns:
            The task's outcome; this method does not raise for task failures
        """
        control = control or TaskControl()
        state = _RunState(
            control=control,
            tracker=FailureTracker(
                self.config.repeated_error_limit,
                self.config.consecutive_validation_failure_limit,
            ),
        )
        # Reads are only reused within one run; the document may change while a task waits
        self.operations.cache.clear()
        task.status = TaskStatus.RUNNING
        task.pending_question = None

        if task.plan is None:
            try:
                task.plan = await self.plan(task)
            except PlannerParseError as e:
                self.logger.warning(f"Task {task.id}: planner output unusable: {e}")
                if self.fallback is not None:
                    task.add_log("think", thought="No usable plan; switching to step-by-step mode")
                    return await self.fallback.run(task, control)
                return await self.fail(task, ErrorKind.PLANNER_PARSE_FAILURE, str(e), e.recommendation)

        start = task.resume_index
        task.resume_index = None
        if start is None:
            prepared = await self._prepare(task, state)
            if prepared is not None:
                return prepared
            start = 0

        return await self._execute(task, state, start)

    async def resume(self, task: Task, control: TaskControl | None = None) -> "Outcome":
        """Continue a pending task after the user said to proceed."""
        if task.status == TaskStatus.PENDING_CONFIRMATION or task.resume_index is None:
            task.confirmed = True
        elif task.plan is not None and task.resume_index < len(task.plan.steps):
            task.acknowledged_steps.append(task.plan.steps[task.resume_index].id)
        return await self.run(task, control)

    async def modify(
        self, task: Task, feedback: str, control: TaskControl | None = None
    ) -> "Outcome":
        """Replan the rest of a pending task using the user's reply."""
        task.extra_context.append(f"User feedback: {feedback}")
        plan = task.plan
        executed = [i for i, s in enumerate(plan.steps) if s.is_finished] if plan else []
        if plan is None or not executed:
            task.plan = None
            task.resume_index = None
            task.confirmed = False
            return await self.run(task, control)

        last = executed[-1]
        try:
            await self.replanner.replan(task, last, "User asked for a change", feedback)
        except ReplanExhaustedError as e:
            return await self.fail(task, e.kind, e.message, e.recommendation)
        except PlannerParseError as e:
            return await self.fail(task, e.kind, str(e), e.recommendation)
        task.resume_index = last + 1
        return await self.run(task, control)

    async def rollback_and_fail(self, task: Task, reason: str) -> Failed:
        """Reverse everything the task applied and end it."""
        return await self.fail(task, ErrorKind.ABORTED, reason, "Start a new request when ready.")

    # --- preparation ---

    async def _prepare(self, task: Task, state: _RunState) -> "Outcome | None":
        plan = task.plan
        assert plan is not None

        if self.config.force_perception:
            await self._ensure_perception(plan)

        quick = self.validator.quick_validate(plan)
        if quick.undeclared_high_risk and not task.confirmed:
            question = self._high_risk_question(quick)
            return self._suspend_for_question(task, question, resume_index=None)

        writes = plan.has_writes or any(self.registry.is_mutating(s.action) for s in plan.steps)
        result = await self.validator.validate(plan, self.reader) if writes else quick
        for issue in result.warnings:
            state.warnings.append(issue.message)
        blocking = [i for i in result.blocking if i.rule_id != "high_risk_operation"]
        if blocking:
            summary = "; ".join(f"{i.rule_name}: {i.message}" for i in blocking)
            task.add_log("validate", error=summary)
            if self.fallback is not None:
                self.logger.warning(f"Plan failed validation, degrading to single-step mode: {summary}")
                task.extra_context.append(f"Plan validation issues: {summary}")
                return await self.fallback.run(task, state.control)
            self.logger.warning(f"Plan failed validation, executing anyway: {summary}")
            state.warnings.extend(i.message for i in blocking)

        if self.config.confirm_destructive and not task.confirmed:
            destructive = [s for s in self.validator.destructive_steps(plan) if s.is_write_operation]
            if destructive:
                preview = "\n".join(
                    ["This plan includes destructive operations:"]
                    + [f"- {s.order}. {s.action} {s.parameters}" for s in destructive]
                    + ["Reply 'proceed' to run it or 'abort' to cancel."]
                )
                task.status = TaskStatus.PENDING_CONFIRMATION
                task.pending_question = preview
                self.logger.info(f"Task {task.id}: waiting for confirmation")
                return PendingConfirmation(task_id=task.id, preview=preview)
        return None

    async def _ensure_perception(self, plan: ExecutionPlan) -> None:
        """Insert a read of the first write's target when the plan never reads first."""
        first_write = next(
            (i for i, s in enumerate(plan.steps) if self.registry.is_mutating(s.action) or s.is_write_operation),
            None,
        )
        if first_write is None or any(s.synthetic for s in plan.steps):
            return
        if any(not self.registry.is_mutating(s.action) for s in plan.steps[:first_write]):
            return

        write = plan.steps[first_write]
        sheet, _ = await affected_region(write.action, write.parameters, self.reader)
        if not sheet or sheet not in await self.reader.sheet_names():
            return
        used = await self.reader.used_range(sheet)
        plan.insert_step(
            first_write,
            PlanStep(
                action=constants.READ_RANGE,
                parameters={"sheet": sheet, "range": used or "A1"},
                description=f"Inspect {sheet} before changing it",
                synthetic=True,
            ),
        )
        self.logger.info(f"Inserted perception step before first write on {sheet}")

    # --- execution ---

    async def _execute(self, task: Task, state: _RunState, start: int) -> "Outcome":
        plan = task.plan
        assert plan is not None
        index = start
        while index < len(plan.steps):
            if not await state.control.checkpoint():
                return self._cancel(task, state.control.cancel_reason)
            step = plan.steps[index]
            if step.is_finished:
                index += 1
                continue
            outcome = await self._run_step(task, state, index)
            if isinstance(outcome, int):
                index = outcome
                continue
            return outcome
        return await self._complete(task, state)

    async def _run_step(self, task: Task, state: _RunState, index: int) -> "int | Outcome":
        """Run the step at ``index``.

        Returns:
            The next index to run, or a terminal/suspending outcome
        """
        plan = task.plan
        assert plan is not None
        step = plan.steps[index]
        step.status = StepStatus.RUNNING
        self.logger.info(f"Step {step.order}/{len(plan.steps)}: {step.action} {step.description}")
        task.add_log("act", tool_name=step.action, tool_input=step.parameters, thought=step.description)

        pre_context = await self.operations.build_context(
            step.action,
            step.parameters,
            step_id=step.id,
            description=step.description,
            success_condition=step.success_condition,
        )
        if step.id not in task.acknowledged_steps:
            pre = ValidationRuleEngine.failures(
                await self.rules.run(pre_context, RulePhase.PRE_EXECUTION)
            )
            if pre:
                signals = self.resolver.signals_from(pre, pre_context)
                outcome = await self._act_on_signals(task, state, index, signals, executed=False)
                if outcome is not None:
                    return outcome

        result = await self._invoke_with_recovery(task, step)
        step.result = result
        if not result.success:
            if self.recovery.should_skip(step.action, result.error):
                step.status = StepStatus.SKIPPED
                state.warnings.append(f"Skipped step {step.order}: {result.error}")
                task.add_log("observe", observation=f"Skipped: {result.error}")
                return index + 1
            step.status = StepStatus.FAILED
            task.add_log("error", tool_name=step.action, error=result.error)
            return await self._replan(task, state, index, result.error or "Tool failed")

        task.add_log("observe", tool_name=step.action, observation=result.output)
        if result.semantically_changed:
            state.warnings.append(
                f"Step {step.order} was served by {step.substituted_action}; the result may differ from what was asked"
            )

        record = self._step_operation(task, step.id, first=False)
        post_context = await self.operations.build_context(
            step.substituted_action or step.action,
            step.parameters,
            result=result,
            rollback_data=record.rollback_data if record else None,
            step_id=step.id,
            description=step.description,
            success_condition=step.success_condition,
        )
        results = await self.rules.run(post_context, RulePhase.POST_EXECUTION)
        if post_context.is_write:
            results += await self.rules.run(post_context, RulePhase.DATA_QUALITY)
        failures = ValidationRuleEngine.failures(results)
        if not failures:
            state.tracker.record_success()
            step.status = StepStatus.COMPLETED
            return index + 1

        signals = self.resolver.signals_from(failures, post_context)
        outcome = await self._act_on_signals(task, state, index, signals, executed=True)
        if outcome is not None:
            return outcome
        step.status = StepStatus.COMPLETED
        return index + 1

    async def _invoke_with_recovery(self, task: Task, step: PlanStep) -> ToolInvocationResult:
        """Invoke, then repair once, then try an alternate tool."""
        result, _ = await self.operations.execute(task, step.action, step.parameters, step.id)
        if result.success or self.recovery.should_skip(step.action, result.error):
            return result

        repair = await self.recovery.repair(step.action, step.parameters, result.error)
        if repair is not None:
            task.add_log("think", thought=f"Repairing call: {', '.join(repair.changes)}")
            prerequisite_ok = True
            if repair.prerequisite is not None:
                name, params = repair.prerequisite
                pre_result, _ = await self.operations.execute(task, name, params, step.id)
                prerequisite_ok = pre_result.success
            if prerequisite_ok:
                retried, _ = await self.operations.execute(task, repair.tool_name, repair.params, step.id)
                if retried.success:
                    step.action = repair.tool_name
                    step.parameters = repair.params
                    return retried
                result = retried

        alternate = await self.recovery.alternate(step.action, step.parameters)
        if alternate is not None:
            name, params = alternate
            self.logger.warning(f"Falling back from {step.action} to {name}")
            degraded, _ = await self.operations.execute(task, name, params, step.id)
            if degraded.success:
                step.substituted_action = name
                return degraded.model_copy(update={"semantically_changed": True})
        return result

    async def _act_on_signals(
        self,
        task: Task,
        state: _RunState,
        index: int,
        signals: list[ValidationSignal],
        executed: bool,
    ) -> "int | Outcome | None":
        """Resolve the signals of one step and carry out the decision.

        Args:
            task: Running task
            state: Per-run bookkeeping
            index: Index of the step the signals belong to
            signals: Every failing check of that step
            executed: Whether the step's tool call already ran

        Returns:
            None to treat the step as done (or, before execution, to run
            it), an index to jump to, or an outcome that ends or suspends
            the run
        """
        plan = task.plan
        assert plan is not None
        step = plan.steps[index]
        decision = self.resolver.resolve(signals)
        task.add_log("validate", error=decision.reason)

        blocking = [s for s in signals if s.severity == Severity.BLOCK]
        if blocking and decision.action != DecisionAction.CONTINUE:
            ceiling = None
            for signal in blocking:
                ceiling = state.tracker.record_failure(signal.message) or ceiling
            if ceiling is not None:
                self.resolver.record_decision(decision, success=False)
                return await self.fail(
                    task,
                    ErrorKind.VALIDATION_BLOCK,
                    ceiling,
                    "Adjust the request or the data; retrying the same way keeps failing.",
                )
        else:
            state.tracker.record_success()

        first_op = self._step_operation(task, step.id, first=True) if executed else None

        if decision.action == DecisionAction.CONTINUE:
            self.resolver.record_decision(decision, success=True)
            state.warnings.extend(s.message for s in signals)
            return None

        if decision.action == DecisionAction.FIX_AND_RETRY:
            if step.retries >= self.config.max_step_retries:
                self.logger.warning(
                    f"Step {step.order} hit the retry cap ({self.config.max_step_retries}); continuing"
                )
                self.resolver.record_decision(decision, success=False)
                state.warnings.append(f"Step {step.order} still has issues after retries: {decision.reason}")
                return None
            if blocking and first_op is not None:
                await self.snapshots.rollback(task, first_op.id)
            step.retries += 1
            if decision.patch:
                step.parameters = {**step.parameters, **decision.patch}
            step.status = StepStatus.PENDING
            self.resolver.record_decision(decision, success=True)
            self.logger.info(f"Retrying step {step.order} (attempt {step.retries})")
            return index

        if decision.action == DecisionAction.ROLLBACK_AND_REPLAN:
            if first_op is not None:
                await self.snapshots.rollback(task, first_op.id)
            step.status = StepStatus.FAILED
            self.resolver.record_decision(decision, success=True)
            return await self._replan(task, state, index, decision.reason)

        if decision.action == DecisionAction.ASK_USER:
            self.resolver.record_decision(decision, success=True)
            if executed:
                step.status = StepStatus.COMPLETED
                resume = index + 1
            else:
                step.status = StepStatus.PENDING
                resume = index
            return self._suspend_for_question(task, decision.question or decision.reason, resume)

        self.resolver.record_decision(decision, success=True)
        step.status = StepStatus.FAILED
        return await self.fail(task, ErrorKind.VALIDATION_BLOCK, decision.reason, "Review the data before trying again.")

    async def _replan(self, task: Task, state: _RunState, index: int, error: str) -> "int | Outcome":
        try:
            steps = await self.replanner.replan(task, index, error)
        except ReplanExhaustedError as e:
            return await self.fail(task, e.kind, e.message, e.recommendation)
        except PlannerParseError as e:
            return await self.fail(task, e.kind, f"{error}; the recovery plan was unusable: {e}", e.recommendation)
        if not steps:
            return await self.fail(
                task,
                ErrorKind.REPLAN_EXHAUSTED,
                f"Could not recover: {error}",
                "Split the request into smaller tasks or fix the data manually.",
            )
        return index + 1

    # --- endings ---

    def _suspend_for_question(self, task: Task, question: str, resume_index: int | None) -> PendingClarification:
        task.status = TaskStatus.PENDING_CLARIFICATION
        task.pending_question = question
        task.resume_index = resume_index
        task.add_log("respond", observation=question)
        self.logger.info(f"Task {task.id}: waiting for clarification")
        return PendingClarification(task_id=task.id, question=question)

    def _high_risk_question(self, result: PlanValidationResult) -> str:
        lines = ["The plan contains operations that were not declared as changes:"]
        lines.extend(f"- {issue.message}" for issue in result.undeclared_high_risk)
        lines.append("Should I run them? Reply 'proceed' or 'abort'.")
        return "\n".join(lines)

    async def _complete(self, task: Task, state: _RunState) -> Completed:
        plan = task.plan
        assert plan is not None
        warnings = list(state.warnings)
        if task.rolled_back:
            warnings.append("Some operations were rolled back during execution; review the affected ranges.")
        done = [s for s in plan.steps if s.status == StepStatus.COMPLETED]
        message = plan.completion_message or f"Completed {len(done)} step(s)."
        task.result = message
        task.finish(TaskStatus.COMPLETED)
        self._persist(task)
        self.logger.info(f"Task {task.id} completed")
        return Completed(task_id=task.id, message=message, warnings=warnings)

    def _cancel(self, task: Task, reason: str) -> Cancelled:
        task.finish(TaskStatus.CANCELLED)
        task.error = reason
        self._persist(task)
        self.logger.info(f"Task {task.id} cancelled")
        return Cancelled(task_id=task.id, reason=reason or "Cancelled by user", succeeded=self._succeeded(task))

    async def fail(self, task: Task, kind: ErrorKind, reason: str, recommendation: str) -> Failed:
        """End a task as failed, rolling back everything it applied."""
        if task.ledger.successful():
            report = await self.snapshots.rollback(task)
            error = report.error()
            if error is not None:
                self.logger.warning(str(error))
                recommendation = f"{recommendation} {error.recommendation}".strip()
        attempted = [
            f"{s.order}. {s.description or s.action}"
            for s in (task.plan.steps if task.plan else [])
            if s.status != StepStatus.PENDING
        ]
        task.error = reason
        task.finish(TaskStatus.FAILED)
        task.add_log("error", error=reason)
        self._persist(task)
        self.logger.info(f"Task {task.id} failed: {reason}")
        return Failed(
            task_id=task.id,
            error_kind=kind,
            reason=reason,
            attempted=attempted,
            succeeded=self._succeeded(task),
            recommendation=recommendation,
            rolled_back=task.rolled_back,
        )

    def _succeeded(self, task: Task) -> list[str]:
        if task.plan is None:
            return []
        return [
            f"{s.order}. {s.description or s.action}"
            for s in task.plan.steps
            if s.status == StepStatus.COMPLETED and not s.rolled_back
        ]

    def _persist(self, task: Task) -> None:
        if self.ledger_store is not None and len(task.ledger):
            self.ledger_store.save(task.id, task.ledger)

    @staticmethod
    def _step_operation(task: Task, step_id: str, first: bool) -> OperationRecord | None:
        """The first or the latest ledger record written for a step."""
        records = [r for r in task.ledger.records if r.step_id == step_id]
        if not records:
            return None
        return records[0] if first else records[-1]
