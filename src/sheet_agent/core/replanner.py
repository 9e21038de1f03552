"""Regenerate the remainder of a plan from the real failure context."""

import logging
from typing import Any

from sheet_agent.core.errors import ReplanExhaustedError
from sheet_agent.core.models import PlanStep, StepStatus, Task
from sheet_agent.core.planning import PlannerGateway, build_replan_request, parse_plan
from sheet_agent.core.tool_registry import ToolRegistry


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}... [truncated]"


class Replanner:
    """Ask the planner for replacement steps, at most ``max_attempts`` times per task.

    Args:
        gateway: Planner gateway
        registry: Tools offered to the planner
        max_attempts: Replans allowed per task
        output_limit: Characters kept from each completed step's output
    """

    def __init__(
        self,
        gateway: PlannerGateway,
        registry: ToolRegistry,
        max_attempts: int = 3,
        output_limit: int = 500,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.max_attempts = max_attempts
        self.output_limit = output_limit
        self.logger = logging.getLogger(__name__)

    def build_failure_context(
        self, task: Task, failed_index: int, error: str, feedback: str = ""
    ) -> dict[str, Any]:
        plan = task.plan
        if plan is None:
            raise ValueError("Task has no plan to repair")
        failed = plan.steps[failed_index]
        completed = [
            {
                "order": step.order,
                "action": step.action,
                "description": step.description,
                "rolled_back": step.rolled_back,
                "output": _truncate(step.result.output if step.result else "", self.output_limit),
            }
            for step in plan.steps[:failed_index]
            if step.status == StepStatus.COMPLETED
        ]
        remaining = [
            {
                "order": step.order,
                "action": step.action,
                "parameters": step.parameters,
                "description": step.description,
            }
            for step in plan.remaining_steps(failed_index)
        ]
        context: dict[str, Any] = {
            "request": task.request,
            "failed_step": {
                "action": failed.action,
                "parameters": failed.parameters,
                "description": failed.description,
            },
            "error": error,
            "completed_steps": completed,
            "remaining_steps": remaining,
            "attempt": task.replan_count,
        }
        if feedback:
            context["user_feedback"] = feedback
        return context

    async def replan(
        self, task: Task, failed_index: int, error: str, feedback: str = ""
    ) -> list[PlanStep]:
        """Replace every step after ``failed_index`` with freshly planned ones.

        Args:
            task: Task whose plan is repaired in place
            failed_index: Index of the failing step; it and earlier steps stay
            error: Raw error of the failing step
            feedback: Optional user reply to include

        Returns:
            The spliced-in steps (possibly empty)

        Raises:
            ReplanExhaustedError: Once the attempt cap has been reached
            PlannerParseError: If the planner output is unusable
        """
        if task.plan is None:
            raise ValueError("Task has no plan to repair")
        if task.replan_count >= self.max_attempts:
            raise ReplanExhaustedError(task.replan_count, error)
        task.replan_count += 1

        context = self.build_failure_context(task, failed_index, error, feedback)
        self.logger.info(
            f"Replanning task {task.id} (attempt {task.replan_count}/{self.max_attempts}) after: {error}"
        )
        response = await self.gateway.complete(
            build_replan_request(context, self.registry.describe())
        )
        new_plan = parse_plan(response)

        task.plan.replace_remaining(failed_index, new_plan.steps)
        if new_plan.completion_message:
            task.plan.completion_message = new_plan.completion_message
        task.add_log(
            "plan",
            thought=f"Replanned {len(new_plan.steps)} step(s) after failure: {error}",
        )
        return new_plan.steps
