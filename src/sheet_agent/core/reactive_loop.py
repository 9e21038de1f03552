"""Reactive think-act-observe loop used when no usable plan exists."""

import logging
from collections import deque
from collections.abc import Iterator
from typing import TYPE_CHECKING

from sheet_agent.config import EngineConfig
from sheet_agent.core.control import FailureTracker, TaskControl
from sheet_agent.core.errors import PlannerParseError
from sheet_agent.core.ledger import LedgerStore
from sheet_agent.core.models import (
    Cancelled,
    Completed,
    DecisionAction,
    ErrorKind,
    Failed,
    OperationResult,
    PendingClarification,
    RulePhase,
    Severity,
    Task,
    TaskStatus,
)
from sheet_agent.core.operations import OperationExecutor
from sheet_agent.core.planning import (
    PlannerGateway,
    ReactiveDecision,
    build_decision_request,
    parse_decision,
)
from sheet_agent.core.signals import SignalDecisionResolver
from sheet_agent.core.snapshot import SnapshotManager
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry
from sheet_agent.core.validation_rules import ValidationRuleEngine, default_rules
from sheet_agent.core.workbook import ResourceReader
from sheet_agent.utils.constants import MAX_OBSERVATION_CHARS

if TYPE_CHECKING:
    from sheet_agent.core.models import Outcome


class ContextWindow:
    """Rolling window of the most recent context entries."""

    def __init__(self, max_size: int = 12) -> None:
        self._entries: deque[str] = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._entries.maxlen or 0

    def add(self, entry: str) -> None:
        if len(entry) > MAX_OBSERVATION_CHARS:
            entry = f"{entry[:MAX_OBSERVATION_CHARS]}... [truncated]"
        self._entries.append(entry)

    def entries(self) -> list[str]:
        return list(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class _Escalation:
    """Counts consecutive bad turns of one kind; escalates once, then gives up."""

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self.count = 0
        self.escalated = False

    def hit(self) -> str | None:
        """Count a bad turn.

        Returns:
            "escalate" on the first crossing, "fail" on the next one
        """
        self.count += 1
        if self.count < self.threshold:
            return None
        self.count = 0
        if self.escalated:
            return "fail"
        self.escalated = True
        return "escalate"

    def clear(self) -> None:
        self.count = 0


class ReactiveLoop:
    """Single-step executor: ask for one action, run it, observe, repeat.

    Iterations and tool calls have separate budgets; exhausting either ends
    the task with an explicit "complexity exceeded" failure.

    Args:
        registry: Tools the loop may call
        gateway: Planner gateway producing one decision per iteration
        reader: Read access to the document
        rules: Validation rule engine (built-in rules when omitted)
        resolver: Signal decision resolver
        config: Budgets and thresholds
        ledger_store: Persists the ledger when the task finishes
    """

    def __init__(
        self,
        registry: ToolRegistry,
        gateway: PlannerGateway,
        reader: ResourceReader,
        rules: ValidationRuleEngine | None = None,
        resolver: SignalDecisionResolver | None = None,
        config: EngineConfig | None = None,
        ledger_store: LedgerStore | None = None,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.config = config or EngineConfig()
        self.registry = registry
        self.gateway = gateway
        self.reader = reader
        self.rules = rules or ValidationRuleEngine(default_rules(), reader=reader)
        self.resolver = resolver or SignalDecisionResolver()
        self.invoker = ToolInvoker(registry)
        self.snapshots = SnapshotManager(reader, self.invoker, registry)
        self.operations = OperationExecutor(
            registry, self.invoker, reader, self.snapshots, self.config.verify_writes
        )
        self.ledger_store = ledger_store

    async def run(self, task: Task, control: TaskControl | None = None) -> "Outcome":
        """Drive the task until it completes, suspends or runs out of budget.

        Args:
            task: Task to work on
            control: Pause/cancel handle checked every iteration

        Returns:
            The task's outcome; budget exhaustion is a Failed outcome, not an exception
        """
        control = control or TaskControl()
        task.status = TaskStatus.RUNNING
        self.operations.cache.clear()
        window = ContextWindow(self.config.context_window_size)
        for entry in task.extra_context:
            window.add(entry)

        tracker = FailureTracker(
            self.config.repeated_error_limit,
            self.config.consecutive_validation_failure_limit,
        )
        non_actionable = _Escalation(self.config.non_actionable_threshold)
        tool_failures = _Escalation(self.config.tool_failure_threshold)
        iterations = 0
        tool_calls = 0
        attempted: list[str] = []

        while True:
            if not await control.checkpoint():
                return self._cancel(task, control.cancel_reason)
            if iterations >= self.config.max_iterations:
                return await self._fail(
                    task,
                    ErrorKind.BUDGET_EXCEEDED,
                    f"Task complexity exceeded: no result after {iterations} iterations",
                    "Split the request into smaller, more specific tasks.",
                    attempted,
                )
            iterations += 1

            request = build_decision_request(task.request, window.entries(), self.registry.describe())
            try:
                decision = parse_decision(await self.gateway.complete(request))
            except PlannerParseError as e:
                self.logger.warning(f"Task {task.id}: unusable decision on iteration {iterations}: {e}")
                task.add_log("error", error=f"Unusable decision: {e}")
                window.add("Your previous reply was not a valid JSON decision. Reply with JSON only.")
                outcome = await self._escalate(task, window, non_actionable, "unusable replies", attempted)
                if outcome is not None:
                    return outcome
                continue

            if decision.thought:
                task.add_log("think", thought=decision.thought)

            if decision.action in ("complete", "respond") or decision.is_complete:
                message = decision.response or decision.thought or "Done."
                task.add_log("respond", observation=message)
                return self._complete(task, message)

            if decision.action == "clarify":
                question = decision.response or decision.thought or "Could you clarify the request?"
                task.status = TaskStatus.PENDING_CLARIFICATION
                task.pending_question = question
                task.add_log("respond", observation=question)
                return PendingClarification(task_id=task.id, question=question)

            if not decision.tool_name:
                window.add("You chose a tool action without naming a tool.")
                outcome = await self._escalate(task, window, non_actionable, "turns without an action", attempted)
                if outcome is not None:
                    return outcome
                continue
            non_actionable.clear()

            if tool_calls >= self.config.max_tool_calls:
                return await self._fail(
                    task,
                    ErrorKind.BUDGET_EXCEEDED,
                    f"Task complexity exceeded: tool-call budget of {self.config.max_tool_calls} used up",
                    "Split the request into smaller, more specific tasks.",
                    attempted,
                )
            tool_calls += 1
            attempted.append(f"{decision.tool_name} {decision.tool_input}")
            outcome = await self._act(task, decision, window, tracker, tool_failures, attempted)
            if outcome is not None:
                return outcome

    async def _act(
        self,
        task: Task,
        decision: ReactiveDecision,
        window: ContextWindow,
        tracker: FailureTracker,
        tool_failures: _Escalation,
        attempted: list[str],
    ) -> "Outcome | None":
        name = decision.tool_name or ""
        task.add_log("act", tool_name=name, tool_input=decision.tool_input)
        result, record = await self.operations.execute(task, name, decision.tool_input)

        if not result.success:
            task.add_log("error", tool_name=name, error=result.error)
            window.add(f"{name} failed: {result.error}")
            return await self._escalate(task, window, tool_failures, "tool failures", attempted)
        tool_failures.clear()
        task.add_log("observe", tool_name=name, observation=result.output)
        window.add(f"{name} -> {result.output}")
        if record is None:
            return None

        context = await self.operations.build_context(
            name,
            decision.tool_input,
            result=result,
            rollback_data=record.rollback_data,
            description=decision.thought,
        )
        results = await self.rules.run(context, RulePhase.POST_EXECUTION)
        results += await self.rules.run(context, RulePhase.DATA_QUALITY)
        failures = ValidationRuleEngine.failures(results)
        if not failures:
            tracker.record_success()
            return None

        signal_decision = self.resolver.resolve(self.resolver.signals_from(failures, context))
        task.add_log("validate", error=signal_decision.reason)
        blocking = [f for f in failures if f.severity == Severity.BLOCK]
        ceiling = None
        for failure in blocking:
            ceiling = tracker.record_failure(failure.message) or ceiling
        if not blocking:
            tracker.record_success()
        if ceiling is not None:
            self.resolver.record_decision(signal_decision, success=False)
            return await self._fail(
                task,
                ErrorKind.VALIDATION_BLOCK,
                ceiling,
                "Adjust the request or the data; retrying the same way keeps failing.",
                attempted,
            )

        self.resolver.record_decision(signal_decision, success=True)
        action = signal_decision.action
        if action == DecisionAction.ABORT:
            return await self._fail(
                task, ErrorKind.VALIDATION_BLOCK, signal_decision.reason, "Review the data before trying again.", attempted
            )
        if action == DecisionAction.ASK_USER:
            question = signal_decision.question or signal_decision.reason
            task.status = TaskStatus.PENDING_CLARIFICATION
            task.pending_question = question
            task.add_log("respond", observation=question)
            return PendingClarification(task_id=task.id, question=question)
        if action in (DecisionAction.ROLLBACK_AND_REPLAN, DecisionAction.FIX_AND_RETRY) and blocking:
            if record.result == OperationResult.SUCCESS:
                await self.snapshots.rollback(task, record.id)
            window.add(f"Validation failed and the change was undone: {signal_decision.reason}")
            return None
        window.add(f"Validation warning: {signal_decision.reason}")
        return None

    async def _escalate(
        self,
        task: Task,
        window: ContextWindow,
        counter: _Escalation,
        what: str,
        attempted: list[str],
    ) -> "Outcome | None":
        verdict = counter.hit()
        if verdict is None:
            return None
        if verdict == "escalate":
            self.logger.warning(f"Task {task.id}: escalating after repeated {what}")
            window.add(
                f"Several {what} in a row. Do not repeat the same thing: call a different tool, "
                "ask the user with action 'clarify', or finish with action 'complete'."
            )
            return None
        return await self._fail(
            task,
            ErrorKind.TOOL_EXECUTION_FAILURE,
            f"Stopped after repeated {what}",
            "Rephrase the request or check that the referenced data exists.",
            attempted,
        )

    def _complete(self, task: Task, message: str) -> Completed:
        warnings = []
        if task.rolled_back:
            warnings.append("Some operations were rolled back during execution; review the affected ranges.")
        task.result = message
        task.finish(TaskStatus.COMPLETED)
        self._persist(task)
        return Completed(task_id=task.id, message=message, warnings=warnings)

    def _cancel(self, task: Task, reason: str) -> Cancelled:
        task.error = reason
        task.finish(TaskStatus.CANCELLED)
        self._persist(task)
        return Cancelled(
            task_id=task.id,
            reason=reason or "Cancelled by user",
            succeeded=[f"{r.tool_name} {r.tool_input}" for r in task.ledger.successful()],
        )

    async def _fail(
        self,
        task: Task,
        kind: ErrorKind,
        reason: str,
        recommendation: str,
        attempted: list[str],
    ) -> Failed:
        succeeded = [f"{r.tool_name} {r.tool_input}" for r in task.ledger.successful()]
        if succeeded:
            report = await self.snapshots.rollback(task)
            error = report.error()
            if error is not None:
                self.logger.warning(str(error))
                recommendation = f"{recommendation} {error.recommendation}".strip()
            succeeded = []
        task.error = reason
        task.finish(TaskStatus.FAILED)
        task.add_log("error", error=reason)
        self._persist(task)
        self.logger.info(f"Task {task.id} failed: {reason}")
        return Failed(
            task_id=task.id,
            error_kind=kind,
            reason=reason,
            attempted=list(attempted),
            succeeded=succeeded,
            recommendation=recommendation,
            rolled_back=task.rolled_back,
        )

    def _persist(self, task: Task) -> None:
        if self.ledger_store is not None and len(task.ledger):
            self.ledger_store.save(task.id, task.ledger)
