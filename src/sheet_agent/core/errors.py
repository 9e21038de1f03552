"""Exception taxonomy used across internal seams.

Engines catch these and turn them into an explicit ``Outcome``; they never
escape to the caller of ``ExecutionEngine.run``.
"""

from sheet_agent.core.models import ErrorKind


class AgentError(Exception):
    """Base class for agent failures."""

    kind: ErrorKind = ErrorKind.ABORTED

    def __init__(self, message: str, recommendation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.recommendation = recommendation


class ToolNotFoundError(AgentError):
    kind = ErrorKind.TOOL_NOT_FOUND

    def __init__(self, tool_name: str) -> None:
        super().__init__(
            f"Tool not found: {tool_name}",
            recommendation="Check the tool name against the registered tools.",
        )
        self.tool_name = tool_name


class PlannerParseError(AgentError):
    """Planner output could not be parsed even after bounded repair."""

    kind = ErrorKind.PLANNER_PARSE_FAILURE

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(
            message, recommendation="Rephrase the request or try again."
        )
        self.raw = raw


class ReplanExhaustedError(AgentError):
    kind = ErrorKind.REPLAN_EXHAUSTED

    def __init__(self, attempts: int, last_error: str = "") -> None:
        message = f"Could not recover after {attempts} replan attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(
            message,
            recommendation="Split the request into smaller tasks or fix the data manually.",
        )
        self.attempts = attempts
        self.last_error = last_error


class RollbackPartialFailureError(AgentError):
    """One or more operations could not be reversed."""

    kind = ErrorKind.ROLLBACK_PARTIAL_FAILURE

    def __init__(self, failures: list[str]) -> None:
        super().__init__(
            f"{len(failures)} operation(s) could not be rolled back: "
            + "; ".join(failures),
            recommendation="Inspect the affected ranges manually.",
        )
        self.failures = failures
