"""Session management for the task server."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sheet_agent.config import WORKBOOK_PATH
from sheet_agent.core.models import OperationLedger, Task
from sheet_agent.core.planning import PlannerGateway
from sheet_agent.core.workbook import Workbook
from sheet_agent.interfaces.langchain.agent_client import AgentReply, SheetAgentClient

GatewayFactory = Callable[[], PlannerGateway | None]

logger = logging.getLogger(__name__)


class TaskSession:
    """One workbook plus the agent working on it."""

    def __init__(
        self,
        session_id: str,
        workbook: Workbook,
        gateway: PlannerGateway | None = None,
        summarize: bool = False,
        ttl: timedelta = timedelta(hours=1),
    ):
        self.session_id = session_id
        self.workbook = workbook
        self.client = SheetAgentClient(workbook, gateway=gateway, summarize=summarize)
        self.created_at = datetime.now()
        self.last_accessed = datetime.now()
        self.ttl = ttl

    def update_access(self) -> None:
        """Update the last accessed timestamp."""
        self.last_accessed = datetime.now()

    @property
    def task_count(self) -> int:
        return len(self.client.tasks)

    @property
    def is_expired(self) -> bool:
        """Check if the session has been idle longer than its TTL."""
        return datetime.now() - self.last_accessed > self.ttl


class TaskManager:
    """Manages sessions with automatic cleanup of idle ones.

    Args:
        gateway_factory: Builds the planner gateway for each new session;
            returning None lets the client build its OpenAI-backed default
        cleanup_interval: Seconds between cleanup sweeps
        ttl: Idle time after which a session is dropped
    """

    def __init__(
        self,
        gateway_factory: GatewayFactory | None = None,
        cleanup_interval: int = 300,
        ttl: timedelta = timedelta(hours=1),
    ):
        self.sessions: dict[str, TaskSession] = {}
        self.gateway_factory = gateway_factory
        self.cleanup_interval = cleanup_interval
        self.ttl = ttl
        self._cleanup_task: asyncio.Task | None = None

    def _start_cleanup_task(self) -> None:
        """Start the background cleanup task if there's a running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop running, skip cleanup task creation
            return
        self._cleanup_task = loop.create_task(self._cleanup_expired_sessions())

    async def _cleanup_expired_sessions(self) -> None:
        """Background task to clean up expired sessions."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                removed = self.cleanup_expired()
                if removed:
                    logger.info(f"Cleaned up {removed} expired sessions")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Error in session cleanup: {e}")

    def cleanup_expired(self) -> int:
        expired = [sid for sid, session in self.sessions.items() if session.is_expired]
        for session_id in expired:
            self.delete_session(session_id)
        return len(expired)

    def create_session(
        self, workbook: dict[str, Any] | None = None, summarize: bool = False
    ) -> str:
        """Create a new session.

        Args:
            workbook: Serialized workbook; falls back to the WORKBOOK_PATH file,
                then to an empty workbook with Sheet1
            summarize: Summarize completed tasks with the LLM

        Returns:
            The new session's ID
        """
        self._start_cleanup_task()
        session_id = str(uuid4())
        if workbook:
            book = Workbook.from_dict(workbook)
        elif WORKBOOK_PATH:
            book = Workbook.from_json_file(WORKBOOK_PATH)
        else:
            book = Workbook()
        gateway = self.gateway_factory() if self.gateway_factory else None
        self.sessions[session_id] = TaskSession(
            session_id, book, gateway=gateway, summarize=summarize, ttl=self.ttl
        )
        return session_id

    def get_session(self, session_id: str) -> TaskSession | None:
        """Get an existing session by ID."""
        session = self.sessions.get(session_id)
        if session:
            session.update_access()
        return session

    def require_session(self, session_id: str) -> TaskSession:
        session = self.get_session(session_id)
        if session is None:
            raise LookupError(f"Session {session_id} not found")
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session."""
        return self.sessions.pop(session_id, None) is not None

    def get_session_count(self) -> int:
        """Get the number of active sessions."""
        return len(self.sessions)

    def get_session_info(self, session_id: str) -> dict[str, Any] | None:
        """Get session information."""
        session = self.get_session(session_id)
        if not session:
            return None

        return {
            "session_id": session.session_id,
            "created_at": session.created_at.isoformat(),
            "last_accessed": session.last_accessed.isoformat(),
            "task_count": session.task_count,
            "is_active": not session.is_expired,
        }

    async def run_task(self, session_id: str, message: str) -> AgentReply:
        session = self.require_session(session_id)
        return await session.client.run(message)

    async def reply(self, session_id: str, task_id: str, message: str) -> AgentReply:
        session, _ = self.require_task(session_id, task_id)
        return await session.client.reply(task_id, message)

    def require_task(self, session_id: str, task_id: str) -> tuple[TaskSession, Task]:
        session = self.require_session(session_id)
        task = session.client.get_task(task_id)
        if task is None:
            raise LookupError(f"Task {task_id} not found")
        return session, task

    def cancel(self, session_id: str, task_id: str, reason: str) -> None:
        session, _ = self.require_task(session_id, task_id)
        session.client.cancel(task_id, reason)

    def pause(self, session_id: str, task_id: str) -> None:
        session, _ = self.require_task(session_id, task_id)
        session.client.pause(task_id)

    def resume(self, session_id: str, task_id: str) -> None:
        session, _ = self.require_task(session_id, task_id)
        session.client.resume(task_id)

    def get_ledger(self, session_id: str, task_id: str) -> OperationLedger:
        """The task's live ledger, or the persisted one once it was saved."""
        session, task = self.require_task(session_id, task_id)
        if len(task.ledger):
            return task.ledger
        return session.client.ledger_store.load(task_id) or task.ledger

    async def shutdown(self) -> None:
        """Clean shutdown of the task manager."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        self.sessions.clear()
