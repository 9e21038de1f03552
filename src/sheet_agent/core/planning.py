"""Planner gateway contract, prompts and parsing of planner output.

Planner output is untrusted: it goes through the lenient JSON parser and
pydantic validation before it becomes an ``ExecutionPlan``.
"""

import json
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from sheet_agent.core.errors import PlannerParseError
from sheet_agent.core.models import ExecutionPlan, PlanStep
from sheet_agent.utils.json_repair import JsonRepairError, lenient_parse

PLAN_SYSTEM_PROMPT = """You are a spreadsheet operations planner.
Break the user's request into an ordered list of tool calls.

Available tools:
{tools_description}

Rules:
- Read the data before changing it
- Prefer formulas over typed-in computed values
- Mark every step that changes the workbook with "isWriteOperation": true
- Use dependsOn to reference earlier step ids only

Respond with JSON only:
{{"intent": "query|operation", "steps": [{{"id": "s1", "order": 1, "action": "<tool>",
"parameters": {{}}, "description": "...", "isWriteOperation": false,
"successCondition": "...", "dependsOn": []}}], "successConditions": [],
"completionMessage": "..."}}"""

REPLAN_SYSTEM_PROMPT = """You are repairing a spreadsheet plan that failed part way.
Return replacement steps for the remaining work only; completed steps stay as they are.

Available tools:
{tools_description}

Respond with JSON only, in the same shape as a plan:
{{"intent": "operation", "steps": [...], "completionMessage": "..."}}
Return an empty steps list if the task cannot be completed."""

DECISION_SYSTEM_PROMPT = """You are a spreadsheet assistant working one step at a time.
Decide the single next action from the request and the recent history.

Available tools:
{tools_description}

Respond with JSON only:
{{"thought": "...", "action": "tool|respond|complete|clarify", "toolName": "...",
"toolInput": {{}}, "response": "...", "isComplete": false}}"""


class PlannerRequest(BaseModel):
    message: str
    system_prompt: str
    response_format: Literal["json", "text"] = "json"


class PlannerResponse(BaseModel):
    message: str
    truncated: bool = False
    finish_reason: str | None = None


class PlannerGateway(Protocol):
    """Converts (request, context) into planner text. Non-deterministic."""

    async def complete(self, request: PlannerRequest) -> PlannerResponse: ...


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _PlannedStep(_CamelModel):
    id: str | None = None
    order: int | None = None
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    is_write_operation: bool = False
    success_condition: str | None = None
    depends_on: list[str | int] = Field(default_factory=list)


class _PlannedPlan(_CamelModel):
    intent: str = "operation"
    steps: list[_PlannedStep] = Field(default_factory=list)
    success_conditions: list[str] = Field(default_factory=list)
    completion_message: str = ""


class ReactiveDecision(_CamelModel):
    """One think-act decision of the reactive loop."""

    thought: str = ""
    action: Literal["tool", "respond", "complete", "clarify"]
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
    response: str | None = None
    is_complete: bool = False


def describe_tools(tools: list[dict[str, Any]]) -> str:
    return "\n".join(f"- {tool['name']}: {tool.get('description', '')}" for tool in tools)


def build_plan_request(
    request_text: str, tools: list[dict[str, Any]], context: str = ""
) -> PlannerRequest:
    message = request_text if not context else f"{request_text}\n\nContext:\n{context}"
    return PlannerRequest(
        message=message,
        system_prompt=PLAN_SYSTEM_PROMPT.format(tools_description=describe_tools(tools)),
    )


def build_replan_request(
    failure_context: dict[str, Any], tools: list[dict[str, Any]]
) -> PlannerRequest:
    return PlannerRequest(
        message=json.dumps(failure_context, ensure_ascii=False, default=str, indent=2),
        system_prompt=REPLAN_SYSTEM_PROMPT.format(tools_description=describe_tools(tools)),
    )


def build_decision_request(
    request_text: str, history: list[str], tools: list[dict[str, Any]]
) -> PlannerRequest:
    lines = [f"Request: {request_text}"]
    if history:
        lines.append("Recent history:")
        lines.extend(history)
    return PlannerRequest(
        message="\n".join(lines),
        system_prompt=DECISION_SYSTEM_PROMPT.format(tools_description=describe_tools(tools)),
    )


def _load(response: PlannerResponse) -> Any:
    try:
        return lenient_parse(response.message, truncated=response.truncated).value
    except JsonRepairError as e:
        raise PlannerParseError(str(e), raw=response.message) from e


def to_plan_steps(planned: list[_PlannedStep]) -> list[PlanStep]:
    """Convert planner steps, resolving order-based dependencies to ids."""
    steps: list[PlanStep] = []
    order_to_id: dict[int, str] = {}
    for position, item in enumerate(planned, 1):
        fields: dict[str, Any] = {
            "order": item.order or position,
            "action": item.action,
            "parameters": item.parameters,
            "description": item.description,
            "is_write_operation": item.is_write_operation,
            "success_condition": item.success_condition,
        }
        if item.id:
            fields["id"] = item.id
        step = PlanStep(**fields)
        order_to_id[step.order] = step.id
        steps.append(step)

    for item, step in zip(planned, steps):
        depends_on = []
        for ref in item.depends_on:
            if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
                depends_on.append(order_to_id.get(int(ref), str(ref)))
            else:
                depends_on.append(ref)
        step.depends_on = depends_on
    return steps


def parse_plan(response: PlannerResponse) -> ExecutionPlan:
    """Parse planner output into an ExecutionPlan.

    Args:
        response: Raw planner response

    Returns:
        Validated plan

    Raises:
        PlannerParseError: If the output is not a usable plan
    """
    data = _load(response)
    if isinstance(data, list):
        data = {"steps": data}
    if not isinstance(data, dict):
        raise PlannerParseError("Planner output is not a JSON object", raw=response.message)
    try:
        planned = _PlannedPlan.model_validate(data)
        return ExecutionPlan(
            intent=planned.intent,
            steps=to_plan_steps(planned.steps),
            success_conditions=planned.success_conditions,
            completion_message=planned.completion_message,
        )
    except ValidationError as e:
        raise PlannerParseError(f"Planner output is not a valid plan: {e}", raw=response.message) from e
    except ValueError as e:
        raise PlannerParseError(str(e), raw=response.message) from e


def parse_decision(response: PlannerResponse) -> ReactiveDecision:
    """Parse one reactive-loop decision.

    Unparsable output is a parse error; it is never read as "done".

    Raises:
        PlannerParseError: If the output is not a usable decision
    """
    data = _load(response)
    if not isinstance(data, dict):
        raise PlannerParseError("Decision is not a JSON object", raw=response.message)
    try:
        return ReactiveDecision.model_validate(data)
    except ValidationError as e:
        raise PlannerParseError(f"Invalid decision: {e}", raw=response.message) from e
