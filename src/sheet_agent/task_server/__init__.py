"""HTTP task server package for the spreadsheet agent."""

from sheet_agent.task_server.models import (
    CreateSessionRequest,
    CreateSessionResponse,
    HealthResponse,
    ReplyRequest,
    SessionInfoResponse,
    TaskControlRequest,
    TaskRequest,
    TaskResponse,
    TaskStatusResponse,
)
from sheet_agent.task_server.server import TaskServer, main
from sheet_agent.task_server.task_manager import TaskManager, TaskSession

__all__ = [
    # Server
    "TaskServer",
    "main",
    # Session Management
    "TaskManager",
    "TaskSession",
    # Models
    "CreateSessionRequest",
    "CreateSessionResponse",
    "TaskRequest",
    "ReplyRequest",
    "TaskControlRequest",
    "TaskResponse",
    "TaskStatusResponse",
    "SessionInfoResponse",
    "HealthResponse",
]
