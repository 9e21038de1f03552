"""LangGraph orchestration for the plan-validate-execute workflow."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from langgraph.graph import END, StateGraph
from pydantic import SecretStr

from sheet_agent.config import OPENAI_MODEL
from sheet_agent.core.control import TaskControl
from sheet_agent.core.errors import PlannerParseError
from sheet_agent.core.execution_engine import ExecutionEngine
from sheet_agent.core.intent import IntentClassifier, KeywordIntentClassifier, ReplyIntent
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
from sheet_agent.interfaces.langchain.agent_state import AgentState
from sheet_agent.interfaces.langchain.planner import message_text

logger = logging.getLogger(__name__)

Summarizer = Callable[[Task, Completed], Awaitable[str]]

SYNTHESIS_PROMPT = """You are a spreadsheet assistant summarizing what a multi-step task changed.

Given the original request and the log of executed steps, write a short answer that:
1. States what was done, naming sheets and ranges
2. Mentions any warnings the user should review
3. Does not invent changes that are not in the log

Do NOT simply list every step. Use markdown bullet points when there are several changes."""


def create_summarizer(api_key: str, model: str = OPENAI_MODEL) -> Summarizer:
    """Build an LLM-backed summarizer for completed tasks.

    Args:
        api_key: OpenAI API key
        model: Chat model name

    Returns:
        Coroutine function producing the final answer text
    """
    llm = ChatOpenAI(api_key=SecretStr(api_key), model=model, temperature=0)
    prompt = ChatPromptTemplate.from_messages(
        [
            ("system", SYNTHESIS_PROMPT),
            (
                "user",
                """Original request: {task}

Step log:
{steps}

Warnings:
{warnings}

Provide the final answer:""",
            ),
        ]
    )
    chain = prompt | llm

    async def summarize(task: Task, outcome: Completed) -> str:
        steps = [
            f"{entry.type}: {entry.tool_name or ''} {entry.observation or entry.thought or entry.error or ''}".strip()
            for entry in task.log
            if entry.type in ("act", "observe", "validate", "error")
        ]
        response = await chain.ainvoke(
            {
                "task": task.request,
                "steps": "\n".join(steps) or "(no steps)",
                "warnings": "\n".join(outcome.warnings) or "(none)",
            }
        )
        return message_text(response.content)

    return summarize


def render_outcome(outcome: Any) -> str:
    """Plain-text rendering of an outcome for the user."""
    if isinstance(outcome, Completed):
        if not outcome.warnings:
            return outcome.message
        return "\n".join([outcome.message, "", "Warnings:"] + [f"- {w}" for w in outcome.warnings])
    if isinstance(outcome, Failed):
        return outcome.describe()
    if isinstance(outcome, Cancelled):
        return f"Cancelled: {outcome.reason}"
    if isinstance(outcome, PendingConfirmation):
        return outcome.preview
    if isinstance(outcome, PendingClarification):
        return outcome.question
    return ""


def create_agent_graph(
    engine: ExecutionEngine,
    fallback: ReactiveLoop | None = None,
    classifier: IntentClassifier | None = None,
    summarizer: Summarizer | None = None,
    controls: dict[str, TaskControl] | None = None,
) -> Any:
    """Create the LangGraph workflow around an execution engine.

    Args:
        engine: Plan-driven execution engine
        fallback: Reactive loop used when no usable plan exists
        classifier: Classifies replies to pending tasks
        summarizer: Optional LLM summary of completed tasks
        controls: Pause/cancel handles keyed by task id

    Returns:
        Compiled graph
    """
    graph = StateGraph(AgentState)
    classifier = classifier or KeywordIntentClassifier()
    controls = controls if controls is not None else {}

    def control_for(task: Task) -> TaskControl:
        return controls.setdefault(task.id, TaskControl())

    # --- Node Functions ---

    async def plan_node(state: AgentState) -> AgentState:
        """Generate the initial plan."""
        task = state["task"]
        try:
            task.plan = await engine.plan(task)
            return {**state, "mode": "plan"}
        except PlannerParseError as e:
            logger.warning(f"Planning failed for task {task.id}: {e}")
            if fallback is not None:
                task.add_log("think", thought="No usable plan; switching to step-by-step mode")
                return {**state, "mode": "reactive"}
            outcome = await engine.fail(task, ErrorKind.PLANNER_PARSE_FAILURE, str(e), e.recommendation)
            return {**state, "mode": "plan", "outcome": outcome}

    async def execute_node(state: AgentState) -> AgentState:
        """Validate and run the plan."""
        task = state["task"]
        outcome = await engine.run(task, control_for(task))
        return {**state, "outcome": outcome}

    async def reactive_node(state: AgentState) -> AgentState:
        """Work the request one step at a time."""
        task = state["task"]
        assert fallback is not None
        outcome = await fallback.run(task, control_for(task))
        return {**state, "outcome": outcome}

    async def classify_node(state: AgentState) -> AgentState:
        """Classify the user's reply to a pending question."""
        result = await classifier.classify(state.get("reply") or "")
        logger.info(f"Reply classified as {result.intent.value} ({result.confidence:.2f})")
        return {**state, "intent": result.intent}

    async def resume_node(state: AgentState) -> AgentState:
        task = state["task"]
        outcome = await engine.resume(task, control_for(task))
        return {**state, "outcome": outcome}

    async def modify_node(state: AgentState) -> AgentState:
        task = state["task"]
        outcome = await engine.modify(task, state.get("reply") or "", control_for(task))
        return {**state, "outcome": outcome}

    async def abort_node(state: AgentState) -> AgentState:
        task = state["task"]
        if state.get("intent") == ReplyIntent.ROLLBACK:
            reason = "Rolled back at the user's request"
        else:
            reason = "Aborted by the user"
        outcome = await engine.rollback_and_fail(task, reason)
        return {**state, "outcome": outcome}

    async def unclear_node(state: AgentState) -> AgentState:
        """Ask again when the reply could not be classified."""
        task = state["task"]
        question = (
            "Sorry, I did not understand. Reply 'proceed', 'rollback', 'abort', "
            "or describe what to change.\n\n" + (task.pending_question or "")
        ).strip()
        return {**state, "outcome": PendingClarification(task_id=task.id, question=question)}

    async def finish_node(state: AgentState) -> AgentState:
        """Compile the final response from the outcome."""
        outcome = state.get("outcome")
        text = render_outcome(outcome)
        if isinstance(outcome, Completed) and summarizer is not None:
            try:
                text = await summarizer(state["task"], outcome)
            except Exception as e:
                logger.warning(f"Summary generation failed, using plain result: {e}")
        return {**state, "final_response": text}

    # --- Routing Functions ---

    def route_entry(state: AgentState) -> str:
        if state.get("reply") is not None:
            return "classify"
        if state["task"].plan is None:
            return "plan"
        return "execute"

    def route_after_plan(state: AgentState) -> str:
        if state.get("outcome") is not None:
            return "finish"
        return "reactive" if state.get("mode") == "reactive" else "execute"

    def route_after_classify(state: AgentState) -> str:
        intent = state.get("intent")
        if intent == ReplyIntent.PROCEED:
            return "resume"
        if intent == ReplyIntent.MODIFY:
            return "modify"
        if intent in (ReplyIntent.ROLLBACK, ReplyIntent.ABORT):
            return "abort"
        return "unclear"

    # --- Build Graph ---

    graph.add_node("plan", plan_node)
    graph.add_node("execute", execute_node)
    graph.add_node("reactive", reactive_node)
    graph.add_node("classify", classify_node)
    graph.add_node("resume", resume_node)
    graph.add_node("modify", modify_node)
    graph.add_node("abort", abort_node)
    graph.add_node("unclear", unclear_node)
    graph.add_node("finish", finish_node)

    graph.set_conditional_entry_point(
        route_entry, {"plan": "plan", "execute": "execute", "classify": "classify"}
    )
    graph.add_conditional_edges(
        "plan",
        route_after_plan,
        {"execute": "execute", "reactive": "reactive", "finish": "finish"},
    )
    graph.add_conditional_edges(
        "classify",
        route_after_classify,
        {"resume": "resume", "modify": "modify", "abort": "abort", "unclear": "unclear"},
    )
    for node in ("execute", "reactive", "resume", "modify", "abort", "unclear"):
        graph.add_edge(node, "finish")
    graph.add_edge("finish", END)

    return graph.compile()
