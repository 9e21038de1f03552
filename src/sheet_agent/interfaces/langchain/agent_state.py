"""Data models for agent state management."""

from typing import TypedDict

from sheet_agent.core.intent import ReplyIntent
from sheet_agent.core.models import (
    Cancelled,
    Completed,
    Failed,
    PendingClarification,
    PendingConfirmation,
    Task,
)

OutcomeValue = Completed | Failed | Cancelled | PendingConfirmation | PendingClarification


class AgentState(TypedDict, total=False):
    """State managed by LangGraph during the plan-execute workflow."""

    task: Task  # Task being worked on; mutated in place by the engine
    reply: str | None  # User reply to a pending question
    intent: ReplyIntent | None  # Classified reply
    outcome: OutcomeValue | None  # Result of the last engine run
    final_response: str  # Text shown to the user
    mode: str  # "plan" or "reactive"
