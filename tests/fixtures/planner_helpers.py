"""Scripted planner gateway and builders for planner output."""

import json
from collections import deque
from typing import Any

import pytest

from sheet_agent.core.errors import PlannerParseError
from sheet_agent.core.planning import PlannerRequest, PlannerResponse


class ScriptedGateway:
    """Planner gateway that replays queued responses in order.

    Dicts and lists are sent as JSON, strings as they are. Every request is
    recorded so tests can inspect what the planner was asked.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses: deque[PlannerResponse] = deque()
        self.requests: list[PlannerRequest] = []
        self.queue(*responses)

    def queue(self, *responses: Any) -> None:
        for response in responses:
            if isinstance(response, PlannerResponse):
                self.responses.append(response)
            elif isinstance(response, str):
                self.responses.append(PlannerResponse(message=response))
            else:
                self.responses.append(PlannerResponse(message=json.dumps(response)))

    async def complete(self, request: PlannerRequest) -> PlannerResponse:
        self.requests.append(request)
        if not self.responses:
            raise PlannerParseError("No scripted planner response left")
        return self.responses.popleft()


def plan_step(
    step_id: str,
    action: str,
    parameters: dict[str, Any] | None = None,
    description: str = "",
    write: bool = False,
    depends_on: list[str] | None = None,
) -> dict[str, Any]:
    """One step in the planner's camelCase wire format."""
    return {
        "id": step_id,
        "action": action,
        "parameters": parameters or {},
        "description": description,
        "isWriteOperation": write,
        "dependsOn": depends_on or [],
    }


def plan_output(*steps: dict[str, Any], completion: str = "Done.") -> dict[str, Any]:
    return {
        "intent": "operation",
        "steps": list(steps),
        "successConditions": [],
        "completionMessage": completion,
    }


def decision_output(
    action: str,
    tool: str | None = None,
    tool_input: dict[str, Any] | None = None,
    response: str | None = None,
    thought: str = "",
) -> dict[str, Any]:
    """One reactive-loop decision."""
    return {
        "thought": thought,
        "action": action,
        "toolName": tool,
        "toolInput": tool_input or {},
        "response": response,
        "isComplete": action == "complete",
    }


@pytest.fixture
def gateway() -> ScriptedGateway:
    """Empty scripted gateway; tests queue their own responses."""
    return ScriptedGateway()
