"""Tests for the plan-driven execution engine."""

import asyncio
from typing import Any

import pytest

from sheet_agent.config import EngineConfig
from sheet_agent.core.control import TaskControl
from sheet_agent.core.execution_engine import ExecutionEngine
from sheet_agent.core.ledger import LedgerStore
from sheet_agent.core.models import (
    Cancelled,
    Completed,
    DecisionAction,
    ErrorKind,
    Failed,
    OperationResult,
    PendingClarification,
    PendingConfirmation,
    RulePhase,
    Severity,
    StepStatus,
    Task,
    TaskStatus,
    ToolInvocationResult,
    ValidationCheckResult,
    ValidationContext,
)
from sheet_agent.core.tool_registry import FunctionTool, ToolRegistry
from sheet_agent.core.validation_rules import FunctionRule, ValidationRuleEngine
from sheet_agent.core.workbook import Workbook, WorkbookReader
from sheet_agent.utils import constants
from tests.fixtures.planner_helpers import ScriptedGateway, plan_output, plan_step

LITERAL_WRITE = plan_step(
    "s1",
    constants.WRITE_RANGE,
    {"sheet": "Calc", "range": "A1:A10", "values": [[v] for v in range(2, 21, 2)]},
    description="Fill column A with the doubled values using a formula",
    write=True,
)


class TestLiteralWriteRollback:
    """A write that replaces formulas with typed-in numbers is undone."""

    @pytest.mark.asyncio
    async def test_literal_write_is_rolled_back_and_task_fails(
        self,
        engine: ExecutionEngine,
        gateway: ScriptedGateway,
        workbook: Workbook,
        ledger_store: LedgerStore,
    ) -> None:
        """Test the formula column is restored and the rule's message is reported."""
        before = workbook.read("Calc", "A1:A10")
        gateway.queue(plan_output(LITERAL_WRITE), plan_output())

        task = Task(request="Double column B into column A")
        outcome = await engine.run(task)

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.REPLAN_EXHAUSTED
        assert "literal numbers" in outcome.reason
        assert outcome.rolled_back is True
        assert task.status == TaskStatus.FAILED

        after = workbook.read("Calc", "A1:A10")
        assert after.formulas == before.formulas
        assert after.values == before.values

        write_records = [r for r in task.ledger.records if r.tool_name == constants.WRITE_RANGE]
        assert len(write_records) == 1
        assert write_records[0].result == OperationResult.ROLLED_BACK
        assert any(step.rolled_back for step in task.plan.steps)

        persisted = ledger_store.load(task.id)
        assert persisted is not None
        assert persisted.records[0].result == OperationResult.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_replan_request_carries_the_failure(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test the replanner is told what went wrong."""
        gateway.queue(plan_output(LITERAL_WRITE), plan_output())

        await engine.run(Task(request="Double column B into column A"))

        assert len(gateway.requests) == 2
        assert "literal numbers" in gateway.requests[1].message
        assert "failed_step" in gateway.requests[1].message

    @pytest.mark.asyncio
    async def test_repeated_identical_failure_hits_the_ceiling(
        self, engine: ExecutionEngine, gateway: ScriptedGateway, workbook: Workbook
    ) -> None:
        """Test the same blocking error twice ends the task."""
        before = workbook.read("Calc", "A1:A10")
        gateway.queue(plan_output(LITERAL_WRITE), plan_output(LITERAL_WRITE))

        task = Task(request="Double column B into column A")
        outcome = await engine.run(task)

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.VALIDATION_BLOCK
        assert "occurred 2 times" in outcome.reason
        assert workbook.read("Calc", "A1:A10").formulas == before.formulas
        assert not task.ledger.successful()


class TestHighRiskOperations:
    """Destructive steps never run without an explicit answer."""

    @pytest.fixture
    def bulk_delete(self) -> dict[str, Any]:
        return plan_step(
            "s1",
            constants.DELETE_ROWS,
            {"sheet": "Sheet1", "start_row": 1, "end_row": 500},
            description="Remove old rows",
        )

    @pytest.mark.asyncio
    async def test_undeclared_bulk_delete_waits_for_clarification(
        self,
        engine: ExecutionEngine,
        gateway: ScriptedGateway,
        workbook: Workbook,
        bulk_delete: dict[str, Any],
    ) -> None:
        """Test an undeclared delete suspends the task before anything runs."""
        gateway.queue(plan_output(bulk_delete))

        task = Task(request="Clean up the sheet")
        outcome = await engine.run(task)

        assert isinstance(outcome, PendingClarification)
        assert constants.DELETE_ROWS in outcome.question
        assert task.status == TaskStatus.PENDING_CLARIFICATION
        assert workbook.used_range("Sheet1") == "A1:D5"
        assert len(task.ledger) == 0

    @pytest.mark.asyncio
    async def test_abort_after_clarification_leaves_rows(
        self,
        engine: ExecutionEngine,
        gateway: ScriptedGateway,
        workbook: Workbook,
        bulk_delete: dict[str, Any],
    ) -> None:
        """Test aborting a suspended task changes nothing."""
        gateway.queue(plan_output(bulk_delete))
        task = Task(request="Clean up the sheet")
        await engine.run(task)

        outcome = await engine.rollback_and_fail(task, "Aborted by the user")

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.ABORTED
        assert workbook.used_range("Sheet1") == "A1:D5"

    @pytest.mark.asyncio
    async def test_proceed_after_clarification_runs_the_delete(
        self,
        engine: ExecutionEngine,
        gateway: ScriptedGateway,
        workbook: Workbook,
        bulk_delete: dict[str, Any],
    ) -> None:
        """Test the user's go-ahead lets the step run."""
        gateway.queue(plan_output(bulk_delete))
        task = Task(request="Clean up the sheet")
        await engine.run(task)

        outcome = await engine.resume(task)

        assert isinstance(outcome, Completed)
        assert workbook.used_range("Sheet1") is None
        assert task.confirmed is True

    @pytest.mark.asyncio
    async def test_declared_delete_needs_confirmation(
        self,
        engine: ExecutionEngine,
        gateway: ScriptedGateway,
        workbook: Workbook,
        ledger_store: LedgerStore,
    ) -> None:
        """Test a declared destructive step shows a preview, then runs on proceed."""
        gateway.queue(
            plan_output(
                plan_step(
                    "s1",
                    constants.DELETE_ROWS,
                    {"sheet": "Sheet1", "start_row": 4, "end_row": 5},
                    description="Drop East and West",
                    write=True,
                ),
                completion="Removed two regions.",
            )
        )
        task = Task(request="Remove East and West")

        pending = await engine.run(task)
        assert isinstance(pending, PendingConfirmation)
        assert constants.DELETE_ROWS in pending.preview
        assert workbook.used_range("Sheet1") == "A1:D5"

        outcome = await engine.resume(task)
        assert isinstance(outcome, Completed)
        assert outcome.message == "Removed two regions."
        assert workbook.used_range("Sheet1") == "A1:D3"
        assert len(ledger_store.load(task.id) or []) == 1

    @pytest.mark.asyncio
    async def test_modify_replans_with_feedback(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test a change request goes back to the planner with the user's words."""
        delete = plan_step(
            "s1",
            constants.DELETE_ROWS,
            {"sheet": "Sheet1", "start_row": 4, "end_row": 5},
            write=True,
        )
        gateway.queue(plan_output(delete), plan_output(delete))
        task = Task(request="Remove East and West")
        await engine.run(task)

        outcome = await engine.modify(task, "only delete row 5 instead")

        assert isinstance(outcome, PendingConfirmation)
        assert "only delete row 5 instead" in gateway.requests[1].message


class TestReadCache:
    """Identical reads within one task hit the tool once."""

    @pytest.mark.asyncio
    async def test_duplicate_read_is_served_from_cache(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test the second identical read never reaches the tool."""
        read = {"sheet": "Sheet1", "range": "A1:D5"}
        gateway.queue(
            plan_output(
                plan_step("s1", constants.READ_RANGE, read, description="Look at the data"),
                plan_step("s2", constants.READ_RANGE, read, description="Look again"),
            )
        )

        task = Task(request="Show me the sales table twice")
        outcome = await engine.run(task)

        assert isinstance(outcome, Completed)
        assert engine.invoker.call_count == 1
        assert engine.operations.cache.hits == 1
        first, second = task.plan.steps
        assert second.result is not None and second.result.cached is True
        assert first.result is not None and first.result.output == second.result.output


class TestRecovery:
    """Failures are repaired locally before replanning."""

    @pytest.mark.asyncio
    async def test_aliased_parameters_are_repaired(
        self, engine: ExecutionEngine, gateway: ScriptedGateway, workbook: Workbook
    ) -> None:
        """Test a write with misnamed parameters succeeds after repair."""
        gateway.queue(
            plan_output(
                plan_step(
                    "s1",
                    constants.WRITE_RANGE,
                    {"sheetName": "Sheet1", "address": "F1", "values": [["Note"]]},
                    description="Add a note header",
                    write=True,
                )
            )
        )

        task = Task(request="Add a Note header in F1")
        outcome = await engine.run(task)

        assert isinstance(outcome, Completed)
        assert workbook.read("Sheet1", "F1").values == [["Note"]]
        step = task.plan.steps[-1]
        assert step.parameters == {"sheet": "Sheet1", "range": "F1", "values": [["Note"]]}
        assert [r.result for r in task.ledger.records] == [
            OperationResult.FAILED,
            OperationResult.SUCCESS,
        ]
        assert any("Repairing call" in (entry.thought or "") for entry in task.log)

    @pytest.mark.asyncio
    async def test_missing_prefix_is_fixed_and_retried(
        self, engine: ExecutionEngine, gateway: ScriptedGateway, workbook: Workbook
    ) -> None:
        """Test a formula without "=" is patched before it runs."""
        gateway.queue(
            plan_output(
                plan_step(
                    "s1",
                    constants.SET_FORMULA,
                    {"sheet": "Sheet1", "range": "E2:E5", "formula": "B2*C2"},
                    description="Revenue check column",
                    write=True,
                )
            )
        )

        task = Task(request="Add a revenue check column")
        outcome = await engine.run(task)

        assert isinstance(outcome, Completed)
        step = task.plan.steps[-1]
        assert step.retries == 1
        assert step.parameters["formula"] == "=B2*C2"
        assert workbook.read("Sheet1", "E3").formulas == [["=B3*C3"]]
        assert workbook.read("Sheet1", "E3").values == [[60]]


class TestReplanBound:
    """Replanning stops after the configured number of attempts."""

    @pytest.mark.asyncio
    async def test_replans_are_capped(
        self,
        registry: ToolRegistry,
        reader: WorkbookReader,
        gateway: ScriptedGateway,
    ) -> None:
        """Test a step that always fails ends with replan exhaustion."""

        async def always_fails(params: dict[str, Any]) -> ToolInvocationResult:
            return ToolInvocationResult.failure("lookup service returned nothing")

        registry.register(FunctionTool("excel_lookup", always_fails))
        engine = ExecutionEngine(
            registry, gateway, reader, config=EngineConfig(max_replan_attempts=2)
        )
        lookup = plan_step("s1", "excel_lookup", {"key": "North"})
        gateway.queue(plan_output(lookup), plan_output(lookup), plan_output(lookup), plan_output(lookup))

        task = Task(request="Look up North")
        outcome = await engine.run(task)

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.REPLAN_EXHAUSTED
        assert task.replan_count == 2
        assert len(gateway.requests) == 3
        assert all(s.status == StepStatus.FAILED for s in task.plan.steps)


class TestUserQuestions:
    """Rules can hand a decision back to the user mid-run."""

    @pytest.fixture
    def asking_engine(
        self, registry: ToolRegistry, reader: WorkbookReader, gateway: ScriptedGateway
    ) -> ExecutionEngine:
        async def missing_reference(
            context: ValidationContext, reader: Any
        ) -> ValidationCheckResult:
            return ValidationCheckResult(
                passed=False, message="Lookup reference points at a missing sheet"
            )

        rules = ValidationRuleEngine(
            [
                FunctionRule(
                    "lookup_reference",
                    "Lookup reference",
                    missing_reference,
                    phase=RulePhase.POST_EXECUTION,
                    severity=Severity.BLOCK,
                    tools=frozenset({constants.WRITE_RANGE}),
                )
            ],
            reader=reader,
        )
        return ExecutionEngine(registry, gateway, reader, rules=rules, config=EngineConfig())

    @pytest.fixture
    def two_steps(self) -> dict[str, Any]:
        return plan_output(
            plan_step(
                "s1",
                constants.WRITE_RANGE,
                {"sheet": "Sheet1", "range": "F1", "values": [["Lookup"]]},
                write=True,
            ),
            plan_step("s2", constants.READ_RANGE, {"sheet": "Sheet1", "range": "A1:B2"}),
        )

    @pytest.mark.asyncio
    async def test_reference_error_asks_and_resumes_after_the_step(
        self,
        asking_engine: ExecutionEngine,
        gateway: ScriptedGateway,
        two_steps: dict[str, Any],
        workbook: Workbook,
    ) -> None:
        """Test the run suspends after the write and continues on proceed."""
        gateway.queue(two_steps)
        task = Task(request="Add a lookup header")

        pending = await asking_engine.run(task)
        assert isinstance(pending, PendingClarification)
        assert "missing sheet" in pending.question
        assert task.resume_index == 2
        assert workbook.read("Sheet1", "F1").values == [["Lookup"]]

        outcome = await asking_engine.resume(task)
        assert isinstance(outcome, Completed)
        assert task.plan.steps[2].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_rollback_reply_undoes_applied_steps(
        self,
        asking_engine: ExecutionEngine,
        gateway: ScriptedGateway,
        two_steps: dict[str, Any],
        workbook: Workbook,
    ) -> None:
        """Test rolling back a suspended task restores the document."""
        gateway.queue(two_steps)
        task = Task(request="Add a lookup header")
        await asking_engine.run(task)

        outcome = await asking_engine.rollback_and_fail(task, "Rolled back at the user's request")

        assert isinstance(outcome, Failed)
        assert outcome.rolled_back is True
        assert workbook.read("Sheet1", "F1").values == [[None]]


class TestControlAndFailures:
    """Cancellation, pausing and planner failures."""

    @pytest.mark.asyncio
    async def test_cancel_before_first_step(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test a cancelled control stops the run at the first boundary."""
        gateway.queue(plan_output(plan_step("s1", constants.READ_RANGE, {"range": "A1"})))
        control = TaskControl()
        control.cancel("Changed my mind")

        task = Task(request="Read A1")
        outcome = await engine.run(task, control)

        assert isinstance(outcome, Cancelled)
        assert outcome.reason == "Changed my mind"
        assert task.status == TaskStatus.CANCELLED
        assert engine.invoker.call_count == 0

    @pytest.mark.asyncio
    async def test_paused_task_waits_until_cancelled(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test a paused task holds at the step boundary."""
        gateway.queue(plan_output(plan_step("s1", constants.READ_RANGE, {"range": "A1"})))
        control = TaskControl()
        control.pause()

        running = asyncio.create_task(engine.run(Task(request="Read A1"), control))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not running.done()
        assert engine.invoker.call_count == 0

        control.cancel()
        outcome = await asyncio.wait_for(running, timeout=1)
        assert isinstance(outcome, Cancelled)

    @pytest.mark.asyncio
    async def test_unparsable_plan_without_fallback_fails(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test planner garbage is a parse failure, not a silent success."""
        gateway.queue("I would rather not make a plan today")

        outcome = await engine.run(Task(request="Do something"))

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.PLANNER_PARSE_FAILURE

    @pytest.mark.asyncio
    async def test_perception_step_is_inserted_before_first_write(
        self, engine: ExecutionEngine, gateway: ScriptedGateway
    ) -> None:
        """Test a plan that writes blind gets a read of the target first."""
        gateway.queue(
            plan_output(
                plan_step(
                    "s1",
                    constants.WRITE_RANGE,
                    {"sheet": "Sheet1", "range": "F1", "values": [["Note"]]},
                    write=True,
                )
            )
        )

        task = Task(request="Add a note")
        outcome = await engine.run(task)

        assert isinstance(outcome, Completed)
        first = task.plan.steps[0]
        assert first.synthetic is True
        assert first.action == constants.READ_RANGE
        assert first.parameters == {"sheet": "Sheet1", "range": "A1:D5"}


class TestRuleAndFormulaFaults:
    """Faults inside formulas or rules end in an outcome, never an exception."""

    @pytest.mark.asyncio
    async def test_overflowing_formula_is_rolled_back(
        self, engine: ExecutionEngine, gateway: ScriptedGateway, workbook: Workbook
    ) -> None:
        """Test a written formula that overflows is caught as an error value and undone."""
        before = workbook.to_dict()
        gateway.queue(
            plan_output(
                plan_step(
                    "s1",
                    constants.WRITE_RANGE,
                    {"sheet": "Sheet1", "range": "H1", "values": [["=2.5^1000"]]},
                    write=True,
                )
            ),
            plan_output(),
        )

        task = Task(request="Put a growth factor in H1")
        outcome = await engine.run(task)

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.REPLAN_EXHAUSTED
        assert "error values" in outcome.reason
        assert task.status == TaskStatus.FAILED
        assert workbook.to_dict() == before

    @pytest.mark.asyncio
    async def test_crashing_warn_rule_does_not_fail_the_task(
        self,
        registry: ToolRegistry,
        gateway: ScriptedGateway,
        reader: WorkbookReader,
        workbook: Workbook,
    ) -> None:
        """Test a warn-level rule that raises only adds a warning."""

        async def cosmetic(context: ValidationContext, reader: object) -> ValidationCheckResult:
            raise RuntimeError("style table missing")

        rules = ValidationRuleEngine(
            [FunctionRule("cosmetic", "Cosmetic", cosmetic, severity=Severity.WARN)], reader=reader
        )
        engine = ExecutionEngine(registry, gateway, reader, rules=rules, config=EngineConfig())
        gateway.queue(
            plan_output(
                plan_step(
                    "s1",
                    constants.WRITE_RANGE,
                    {"sheet": "Sheet1", "range": "H1", "values": [["Note"]]},
                    write=True,
                ),
                completion="Added the note.",
            )
        )

        outcome = await engine.run(Task(request="Add a note in H1"))

        assert isinstance(outcome, Completed)
        assert workbook.read("Sheet1", "H1").values == [["Note"]]
        assert any("Cosmetic failed to run" in w for w in outcome.warnings)
        assert len(gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_consecutive_distinct_block_failures_hit_the_ceiling(
        self,
        registry: ToolRegistry,
        gateway: ScriptedGateway,
        reader: WorkbookReader,
        workbook: Workbook,
    ) -> None:
        """Test three different blocking failures in a row end the task."""
        calls = 0

        async def shifting_complaint(context: ValidationContext, reader: object) -> ValidationCheckResult:
            nonlocal calls
            calls += 1
            return ValidationCheckResult(
                passed=False,
                message=f"Check {calls} rejected the note",
                recommended=DecisionAction.ROLLBACK_AND_REPLAN,
            )

        rules = ValidationRuleEngine(
            [
                FunctionRule(
                    "shifting",
                    "Shifting check",
                    shifting_complaint,
                    tools=frozenset({constants.WRITE_RANGE}),
                )
            ],
            reader=reader,
        )
        engine = ExecutionEngine(
            registry, gateway, reader, rules=rules, config=EngineConfig(max_replan_attempts=5)
        )
        before = workbook.to_dict()
        note = plan_step(
            "s1",
            constants.WRITE_RANGE,
            {"sheet": "Sheet1", "range": "H1", "values": [["Note"]]},
            write=True,
        )
        gateway.queue(*(plan_output(note) for _ in range(5)))

        task = Task(request="Add a note in H1")
        outcome = await engine.run(task)

        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.VALIDATION_BLOCK
        assert outcome.reason.startswith("3 consecutive validation failures")
        assert calls == 3
        assert len(gateway.requests) == 3
        assert workbook.to_dict() == before
        assert not task.ledger.successful()
