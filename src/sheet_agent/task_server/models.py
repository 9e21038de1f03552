"""Pydantic models for task server requests and responses."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class CreateSessionRequest(BaseModel):
    """Request to create a new session around a workbook."""

    workbook: dict[str, Any] | None = None  # Workbook.to_dict() shape; empty Sheet1 when omitted
    summarize: bool = False


class CreateSessionResponse(BaseModel):
    """Response containing new session ID."""

    session_id: str


class TaskRequest(BaseModel):
    """Request to start a task in an existing session."""

    session_id: str
    message: str


class ReplyRequest(BaseModel):
    """Answer to a task waiting for confirmation or clarification."""

    session_id: str
    message: str


class CancelRequest(BaseModel):
    session_id: str
    reason: str = "Cancelled by user"


class TaskControlRequest(BaseModel):
    """Pause or resume a running task."""

    session_id: str


class TaskResponse(BaseModel):
    """Result of starting or replying to a task."""

    session_id: str
    task_id: str
    status: str
    kind: Literal[
        "completed",
        "failed",
        "cancelled",
        "pending_confirmation",
        "pending_clarification",
    ]
    response: str
    outcome: dict[str, Any] = Field(default_factory=dict)


class StepInfo(BaseModel):
    order: int
    action: str
    description: str
    status: str
    rolled_back: bool = False


class TaskStatusResponse(BaseModel):
    """Current state of a task."""

    task_id: str
    session_id: str
    status: str
    request: str
    steps: list[StepInfo] = Field(default_factory=list)
    operations: int = 0
    rolled_back: bool = False
    pending_question: str | None = None
    result: str | None = None
    error: str | None = None


class SessionInfoResponse(BaseModel):
    """Response containing session information."""

    session_id: str
    created_at: str
    last_accessed: str
    task_count: int
    is_active: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    active_sessions: int = 0
