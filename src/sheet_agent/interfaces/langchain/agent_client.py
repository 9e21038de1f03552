"""High-level client interface for spreadsheet agent interactions."""

import logging
import os
from dataclasses import dataclass
from typing import Any

from sheet_agent.config import EngineConfig, LedgerConfig
from sheet_agent.core.control import TaskControl
from sheet_agent.core.execution_engine import ExecutionEngine
from sheet_agent.core.intent import IntentClassifier
from sheet_agent.core.ledger import LedgerStore
from sheet_agent.core.models import Task, TaskStatus
from sheet_agent.core.planning import PlannerGateway
from sheet_agent.core.reactive_loop import ReactiveLoop
from sheet_agent.core.sheet_tools import create_sheet_registry
from sheet_agent.core.signals import SignalDecisionResolver
from sheet_agent.core.validation_rules import ValidationRuleEngine, default_rules
from sheet_agent.core.workbook import Workbook, WorkbookReader
from sheet_agent.interfaces.langchain.agent_graph import (
    Summarizer,
    create_agent_graph,
    create_summarizer,
)
from sheet_agent.interfaces.langchain.planner import LangChainPlannerGateway
from sheet_agent.interfaces.langchain.tools import SheetTool, create_sheet_tools

MAX_FINISHED_TASKS = 50

TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class AgentReply:
    """What the client hands back for one request or reply."""

    task: Task
    outcome: Any
    text: str

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def pending(self) -> bool:
        return self.task.status in (
            TaskStatus.PENDING_CONFIRMATION,
            TaskStatus.PENDING_CLARIFICATION,
        )


class SheetAgentClient:
    """Client for the guarded spreadsheet agent.

    Wires a workbook, its tools, the rule engine, the resolver and both
    executors into one LangGraph workflow.
    """

    def __init__(
        self,
        workbook: Workbook,
        gateway: PlannerGateway | None = None,
        api_key: str | None = None,
        config: EngineConfig | None = None,
        classifier: IntentClassifier | None = None,
        ledger_store: LedgerStore | None = None,
        summarize: bool = False,
        max_finished_tasks: int = MAX_FINISHED_TASKS,
    ):
        """Initialize the client.

        Args:
            workbook: Document the agent works on
            gateway: Planner gateway; an OpenAI-backed one is built when omitted
            api_key: OpenAI API key, falls back to OPENAI_API_KEY
            config: Engine limits, read from the environment when omitted
            classifier: Reply classifier, keyword-based by default
            ledger_store: Ledger persistence, configured from the environment when omitted
            summarize: Summarize completed tasks with the LLM
            max_finished_tasks: Finished tasks kept for status and ledger lookups
        """
        self.logger = logging.getLogger(__name__)
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if gateway is None:
            gateway = LangChainPlannerGateway(api_key=api_key)

        self.workbook = workbook
        self.reader = WorkbookReader(workbook)
        self.registry = create_sheet_registry(workbook)
        self.config = config or EngineConfig.from_env()
        self.rules = ValidationRuleEngine(default_rules(), reader=self.reader)
        self.resolver = SignalDecisionResolver()
        self.ledger_store = ledger_store or LedgerStore(config=LedgerConfig.from_env())

        self.fallback = ReactiveLoop(
            self.registry,
            gateway,
            self.reader,
            rules=self.rules,
            resolver=self.resolver,
            config=self.config,
            ledger_store=self.ledger_store,
        )
        self.engine = ExecutionEngine(
            self.registry,
            gateway,
            self.reader,
            rules=self.rules,
            resolver=self.resolver,
            config=self.config,
            fallback=self.fallback,
            ledger_store=self.ledger_store,
        )

        summarizer: Summarizer | None = None
        if summarize and api_key:
            summarizer = create_summarizer(api_key)
        self.max_finished_tasks = max_finished_tasks
        self.tasks: dict[str, Task] = {}
        self.controls: dict[str, TaskControl] = {}
        self.graph = create_agent_graph(
            self.engine,
            fallback=self.fallback,
            classifier=classifier,
            summarizer=summarizer,
            controls=self.controls,
        )

    async def run(self, request: str) -> AgentReply:
        """Start a new task for a request.

        Args:
            request: What the user wants done

        Returns:
            The outcome; pending outcomes wait for ``reply``
        """
        task = Task(request=request)
        self.tasks[task.id] = task
        self.resolver.reset()
        self.logger.info(f"Starting task {task.id}: {request}")
        return await self._invoke({"task": task, "reply": None})

    async def reply(self, task_id: str, text: str) -> AgentReply:
        """Answer a pending confirmation or clarification.

        Raises:
            KeyError: If the task is unknown
            ValueError: If the task is not waiting for a reply
        """
        task = self.tasks[task_id]
        if task.status not in (
            TaskStatus.PENDING_CONFIRMATION,
            TaskStatus.PENDING_CLARIFICATION,
        ):
            raise ValueError(f"Task {task_id} is not waiting for a reply ({task.status.value})")
        task.add_log("observe", observation=f"User replied: {text}")
        return await self._invoke({"task": task, "reply": text})

    def pause(self, task_id: str) -> None:
        self.controls.setdefault(task_id, TaskControl()).pause()

    def resume(self, task_id: str) -> None:
        self.controls.setdefault(task_id, TaskControl()).resume()

    def cancel(self, task_id: str, reason: str = "Cancelled by user") -> None:
        """Request cancellation; it takes effect at the next step boundary."""
        self.controls.setdefault(task_id, TaskControl()).cancel(reason)

    def get_task(self, task_id: str) -> Task | None:
        return self.tasks.get(task_id)

    def langchain_tools(self, task_id: str) -> list[SheetTool]:
        """Sheet tools for other LangChain agents, guarded by the task's ledger."""
        task = self.tasks[task_id]

        async def guarded(name: str, params: dict[str, Any]) -> Any:
            result, _ = await self.engine.operations.execute(task, name, params)
            return result

        return create_sheet_tools(self.registry, guarded)

    async def _invoke(self, state: dict[str, Any]) -> AgentReply:
        result = await self.graph.ainvoke(state)
        task = result["task"]
        if task.status in TERMINAL_STATUSES:
            self._forget_finished(task.id)
        return AgentReply(task, result.get("outcome"), result.get("final_response", ""))

    def _forget_finished(self, task_id: str) -> None:
        """Drop the control of a finished task and evict the oldest finished tasks."""
        self.controls.pop(task_id, None)
        finished = [tid for tid, t in self.tasks.items() if t.status in TERMINAL_STATUSES]
        for stale in finished[: max(0, len(finished) - self.max_finished_tasks)]:
            self.logger.debug(f"Evicting finished task {stale}")
            del self.tasks[stale]
            self.controls.pop(stale, None)
