"""Tests for the LangGraph plan-validate-execute workflow."""

from typing import Any

import pytest

from sheet_agent.core.control import TaskControl
from sheet_agent.core.execution_engine import ExecutionEngine
from sheet_agent.core.models import (
    Cancelled,
    Completed,
    ErrorKind,
    Failed,
    PendingClarification,
    PendingConfirmation,
    Task,
)
from sheet_agent.core.reactive_loop import ReactiveLoop
from sheet_agent.core.tool_registry import ToolRegistry
from sheet_agent.core.workbook import Workbook, WorkbookReader
from sheet_agent.interfaces.langchain.agent_graph import create_agent_graph, render_outcome
from sheet_agent.utils import constants
from tests.fixtures.planner_helpers import (
    ScriptedGateway,
    decision_output,
    plan_output,
    plan_step,
)

DELETE_EAST_WEST = plan_step(
    "s1",
    constants.DELETE_ROWS,
    {"sheet": "Sheet1", "start_row": 4, "end_row": 5},
    description="Drop East and West",
    write=True,
)

ADD_NOTE = plan_step(
    "s1",
    constants.WRITE_RANGE,
    {"sheet": "Sheet1", "range": "F1", "values": [["Note"]]},
    write=True,
)


@pytest.fixture
def fallback(registry: ToolRegistry, gateway: ScriptedGateway, reader: WorkbookReader) -> ReactiveLoop:
    return ReactiveLoop(registry, gateway, reader)


async def start(graph: Any, request: str) -> dict[str, Any]:
    return await graph.ainvoke({"task": Task(request=request), "reply": None})


async def answer(graph: Any, state: dict[str, Any], text: str) -> dict[str, Any]:
    return await graph.ainvoke({"task": state["task"], "reply": text})


class TestRenderOutcome:
    """Test suite for render_outcome."""

    @pytest.mark.unit
    def test_completed_with_warnings(self) -> None:
        text = render_outcome(Completed(task_id="t", message="Done.", warnings=["Check E2"]))
        assert text == "Done.\n\nWarnings:\n- Check E2"

    @pytest.mark.unit
    def test_other_outcomes(self) -> None:
        failed = Failed(task_id="t", error_kind=ErrorKind.ABORTED, reason="stopped")
        assert render_outcome(failed).startswith("The task could not be completed: stopped")
        assert render_outcome(Cancelled(task_id="t", reason="later")) == "Cancelled: later"
        assert render_outcome(PendingConfirmation(task_id="t", preview="Delete rows?")) == "Delete rows?"
        assert render_outcome(PendingClarification(task_id="t", question="Which sheet?")) == "Which sheet?"
        assert render_outcome(None) == ""


class TestAgentGraph:
    """Test suite for LangGraph orchestration."""

    @pytest.mark.unit
    def test_graph_has_workflow_nodes(self, engine: ExecutionEngine) -> None:
        graph = create_agent_graph(engine)
        nodes = set(graph.get_graph().nodes)
        assert {"plan", "execute", "reactive", "classify", "resume", "modify", "abort", "unclear", "finish"} <= nodes

    @pytest.mark.asyncio
    async def test_plan_then_execute(self, engine: ExecutionEngine, gateway: ScriptedGateway, workbook: Workbook) -> None:
        gateway.queue(plan_output(ADD_NOTE, completion="Added a note."))

        state = await start(create_agent_graph(engine), "Add a note in F1")

        assert isinstance(state["outcome"], Completed)
        assert state["final_response"] == "Added a note."
        assert state["mode"] == "plan"
        assert workbook.read("Sheet1", "F1").values == [["Note"]]

    @pytest.mark.asyncio
    async def test_unusable_plan_switches_to_reactive_mode(
        self, engine: ExecutionEngine, gateway: ScriptedGateway, fallback: ReactiveLoop
    ) -> None:
        """Test planner garbage hands the task to the step-by-step loop."""
        gateway.queue(
            "I am not sure how to plan this",
            decision_output("complete", response="Nothing needed changing."),
        )

        state = await start(create_agent_graph(engine, fallback=fallback), "Tidy up")

        assert state["mode"] == "reactive"
        assert isinstance(state["outcome"], Completed)
        assert state["final_response"] == "Nothing needed changing."
        assert any(e.thought == "No usable plan; switching to step-by-step mode" for e in state["task"].log)

    @pytest.mark.asyncio
    async def test_unusable_plan_without_fallback_fails(self, engine: ExecutionEngine, gateway: ScriptedGateway) -> None:
        gateway.queue("no plan")

        state = await start(create_agent_graph(engine), "Tidy up")

        assert isinstance(state["outcome"], Failed)
        assert state["outcome"].error_kind == ErrorKind.PLANNER_PARSE_FAILURE
        assert state["final_response"].startswith("The task could not be completed")

    @pytest.mark.asyncio
    async def test_proceed_reply_resumes(self, engine: ExecutionEngine, gateway: ScriptedGateway, workbook: Workbook) -> None:
        """Test a confirmation reply runs the destructive step."""
        gateway.queue(plan_output(DELETE_EAST_WEST, completion="Removed two regions."))
        graph = create_agent_graph(engine)

        pending = await start(graph, "Remove East and West")
        assert isinstance(pending["outcome"], PendingConfirmation)

        state = await answer(graph, pending, "yes")

        assert state["intent"].value == "proceed"
        assert state["final_response"] == "Removed two regions."
        assert workbook.used_range("Sheet1") == "A1:D3"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply,reason",
        [
            ("undo that", "Rolled back at the user's request"),
            ("abort", "Aborted by the user"),
        ],
    )
    async def test_rollback_and_abort_replies(
        self,
        engine: ExecutionEngine,
        gateway: ScriptedGateway,
        workbook: Workbook,
        reply: str,
        reason: str,
    ) -> None:
        gateway.queue(plan_output(DELETE_EAST_WEST))
        graph = create_agent_graph(engine)
        pending = await start(graph, "Remove East and West")

        state = await answer(graph, pending, reply)

        outcome = state["outcome"]
        assert isinstance(outcome, Failed)
        assert outcome.error_kind == ErrorKind.ABORTED
        assert outcome.reason == reason
        assert workbook.used_range("Sheet1") == "A1:D5"

    @pytest.mark.asyncio
    async def test_unclear_reply_asks_again(self, engine: ExecutionEngine, gateway: ScriptedGateway) -> None:
        gateway.queue(plan_output(DELETE_EAST_WEST))
        graph = create_agent_graph(engine)
        pending = await start(graph, "Remove East and West")

        state = await answer(graph, pending, "hmm")

        assert isinstance(state["outcome"], PendingClarification)
        assert state["final_response"].startswith("Sorry, I did not understand.")
        assert pending["outcome"].preview in state["final_response"]

    @pytest.mark.asyncio
    async def test_modify_reply_replans(self, engine: ExecutionEngine, gateway: ScriptedGateway) -> None:
        """Test free-text changes go back to the planner."""
        gateway.queue(plan_output(DELETE_EAST_WEST), plan_output(DELETE_EAST_WEST))
        graph = create_agent_graph(engine)
        pending = await start(graph, "Remove East and West")

        state = await answer(graph, pending, "only delete row 5 instead")

        assert isinstance(state["outcome"], PendingConfirmation)
        assert "only delete row 5 instead" in gateway.requests[-1].message

    @pytest.mark.asyncio
    async def test_summarizer_replaces_plain_text(self, engine: ExecutionEngine, gateway: ScriptedGateway) -> None:
        async def summarize(task: Task, outcome: Completed) -> str:
            return f"Summary of {task.request}"

        gateway.queue(plan_output(ADD_NOTE))
        state = await start(create_agent_graph(engine, summarizer=summarize), "Add a note")

        assert state["final_response"] == "Summary of Add a note"

    @pytest.mark.asyncio
    async def test_failing_summarizer_keeps_plain_text(self, engine: ExecutionEngine, gateway: ScriptedGateway) -> None:
        async def summarize(task: Task, outcome: Completed) -> str:
            raise RuntimeError("model offline")

        gateway.queue(plan_output(ADD_NOTE, completion="Added a note."))
        state = await start(create_agent_graph(engine, summarizer=summarize), "Add a note")

        assert state["final_response"] == "Added a note."

    @pytest.mark.asyncio
    async def test_controls_are_shared_by_task_id(self, engine: ExecutionEngine, gateway: ScriptedGateway) -> None:
        """Test a cancel registered for the task stops execution."""
        gateway.queue(plan_output(ADD_NOTE))
        task = Task(request="Add a note")
        control = TaskControl()
        control.cancel("Changed my mind")

        state = await create_agent_graph(engine, controls={task.id: control}).ainvoke(
            {"task": task, "reply": None}
        )

        assert isinstance(state["outcome"], Cancelled)
        assert state["final_response"] == "Cancelled: Changed my mind"
