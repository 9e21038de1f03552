"""HTTP task server for the spreadsheet agent with session management."""

import argparse
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from sheet_agent.config import DEFAULT_HOST, DEFAULT_PORT, PLANNER_BACKEND_URL
from sheet_agent.interfaces.http.planner_client import HttpPlannerGateway
from sheet_agent.interfaces.langchain.agent_client import AgentReply
from sheet_agent.task_server.models import (
    CancelRequest,
    CreateSessionRequest,
    CreateSessionResponse,
    HealthResponse,
    ReplyRequest,
    SessionInfoResponse,
    StepInfo,
    TaskControlRequest,
    TaskRequest,
    TaskResponse,
    TaskStatusResponse,
)
from sheet_agent.task_server.task_manager import GatewayFactory, TaskManager
from sheet_agent.utils.env import load_env

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _task_response(session_id: str, reply: AgentReply) -> dict[str, Any]:
    outcome = reply.outcome
    response = TaskResponse(
        session_id=session_id,
        task_id=reply.task_id,
        status=reply.task.status.value,
        kind=outcome.kind,
        response=reply.text,
        outcome=outcome.model_dump(mode="json"),
    )
    return response.model_dump()


class TaskServer:
    """HTTP front end: one agent and workbook per session."""

    def __init__(self, gateway_factory: GatewayFactory | None = None):
        self.task_manager = TaskManager(gateway_factory=gateway_factory)

    # Session management endpoints
    async def create_session_endpoint(self, request: Request) -> JSONResponse:
        """Create a new session."""
        try:
            body = await request.json()
            create_request = CreateSessionRequest(**body)
            session_id = self.task_manager.create_session(
                workbook=create_request.workbook, summarize=create_request.summarize
            )
            return JSONResponse(CreateSessionResponse(session_id=session_id).model_dump())
        except Exception as e:
            return JSONResponse({"error": str(e)}, status_code=400)

    async def delete_session_endpoint(self, request: Request) -> JSONResponse:
        """Delete a session."""
        session_id = request.path_params["session_id"]
        if not self.task_manager.delete_session(session_id):
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse({"message": f"Session {session_id} deleted"})

    async def get_session_info_endpoint(self, request: Request) -> JSONResponse:
        """Get session information."""
        session_id = request.path_params["session_id"]
        info = self.task_manager.get_session_info(session_id)
        if not info:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(SessionInfoResponse(**info).model_dump())

    async def get_workbook_endpoint(self, request: Request) -> JSONResponse:
        """Current contents of the session's workbook."""
        session = self.task_manager.get_session(request.path_params["session_id"])
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(session.workbook.to_dict())

    # Task endpoints
    async def create_task_endpoint(self, request: Request) -> JSONResponse:
        """Start a task and run it until it completes, fails or needs the user."""
        try:
            body = await request.json()
            task_request = TaskRequest(**body)
            reply = await self.task_manager.run_task(task_request.session_id, task_request.message)
            return JSONResponse(_task_response(task_request.session_id, reply))
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except LookupError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except Exception as e:
            logger.exception("Task failed unexpectedly")
            return JSONResponse({"error": str(e)}, status_code=500)

    async def reply_endpoint(self, request: Request) -> JSONResponse:
        """Answer a pending confirmation or clarification."""
        try:
            task_id = request.path_params["task_id"]
            body = await request.json()
            reply_request = ReplyRequest(**body)
            reply = await self.task_manager.reply(reply_request.session_id, task_id, reply_request.message)
            return JSONResponse(_task_response(reply_request.session_id, reply))
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except LookupError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except Exception as e:
            logger.exception("Reply failed unexpectedly")
            return JSONResponse({"error": str(e)}, status_code=500)

    async def cancel_endpoint(self, request: Request) -> JSONResponse:
        """Cancel a task at its next step boundary."""
        try:
            task_id = request.path_params["task_id"]
            body = await request.json()
            cancel_request = CancelRequest(**body)
            self.task_manager.cancel(cancel_request.session_id, task_id, cancel_request.reason)
            return JSONResponse({"status": "cancelling"})
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except LookupError as e:
            return JSONResponse({"error": str(e)}, status_code=404)

    async def pause_endpoint(self, request: Request) -> JSONResponse:
        """Hold a task at its next step boundary."""
        return await self._control(request, pause=True)

    async def resume_endpoint(self, request: Request) -> JSONResponse:
        """Let a paused task continue."""
        return await self._control(request, pause=False)

    async def _control(self, request: Request, pause: bool) -> JSONResponse:
        try:
            task_id = request.path_params["task_id"]
            body = await request.json()
            control_request = TaskControlRequest(**body)
            if pause:
                self.task_manager.pause(control_request.session_id, task_id)
            else:
                self.task_manager.resume(control_request.session_id, task_id)
            return JSONResponse({"status": "paused" if pause else "running"})
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except LookupError as e:
            return JSONResponse({"error": str(e)}, status_code=404)

    async def get_ledger_endpoint(self, request: Request) -> JSONResponse:
        """Operation ledger of a task."""
        task_id = request.path_params["task_id"]
        session_id = request.query_params.get("session_id", "")
        try:
            ledger = self.task_manager.get_ledger(session_id, task_id)
        except LookupError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse({"task_id": task_id, **ledger.model_dump(mode="json")})

    async def get_task_endpoint(self, request: Request) -> JSONResponse:
        """Current state of a task."""
        task_id = request.path_params["task_id"]
        session_id = request.query_params.get("session_id", "")
        session = self.task_manager.get_session(session_id)
        task = session.client.get_task(task_id) if session else None
        if task is None:
            return JSONResponse({"error": "Task not found"}, status_code=404)

        steps = [
            StepInfo(
                order=step.order,
                action=step.action,
                description=step.description,
                status=step.status.value,
                rolled_back=step.rolled_back,
            )
            for step in (task.plan.steps if task.plan else [])
        ]
        response = TaskStatusResponse(
            task_id=task.id,
            session_id=session_id,
            status=task.status.value,
            request=task.request,
            steps=steps,
            operations=len(task.ledger),
            rolled_back=task.rolled_back,
            pending_question=task.pending_question,
            result=task.result,
            error=task.error,
        )
        return JSONResponse(response.model_dump())

    async def health_check(self, request: Request) -> JSONResponse:
        """Health check endpoint."""
        response = HealthResponse(
            status="healthy",
            service="sheet-agent-task-server",
            version=VERSION,
            active_sessions=self.task_manager.get_session_count(),
        )
        return JSONResponse(response.model_dump())

    def create_app(self) -> Starlette:
        """Create the Starlette application with routes and middleware."""

        # Define routes
        routes = [
            # Session management
            Route("/sessions", self.create_session_endpoint, methods=["POST"]),
            Route("/sessions/{session_id}", self.delete_session_endpoint, methods=["DELETE"]),
            Route("/sessions/{session_id}/info", self.get_session_info_endpoint, methods=["GET"]),
            Route("/sessions/{session_id}/workbook", self.get_workbook_endpoint, methods=["GET"]),
            # Tasks
            Route("/tasks", self.create_task_endpoint, methods=["POST"]),
            Route("/tasks/{task_id}", self.get_task_endpoint, methods=["GET"]),
            Route("/tasks/{task_id}/reply", self.reply_endpoint, methods=["POST"]),
            Route("/tasks/{task_id}/cancel", self.cancel_endpoint, methods=["POST"]),
            Route("/tasks/{task_id}/pause", self.pause_endpoint, methods=["POST"]),
            Route("/tasks/{task_id}/resume", self.resume_endpoint, methods=["POST"]),
            Route("/tasks/{task_id}/ledger", self.get_ledger_endpoint, methods=["GET"]),
            # Health check
            Route("/health", self.health_check, methods=["GET"]),
        ]

        @asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            yield
            await self.shutdown()

        app = Starlette(routes=routes, lifespan=lifespan)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )
        return app

    async def shutdown(self) -> None:
        """Clean shutdown of the task server."""
        await self.task_manager.shutdown()


def default_gateway_factory() -> GatewayFactory | None:
    """Use the remote planner backend when one is configured."""
    if PLANNER_BACKEND_URL:
        return lambda: HttpPlannerGateway(PLANNER_BACKEND_URL)
    return None


def main() -> None:
    """Main entry point for the task server."""
    load_env()

    parser = argparse.ArgumentParser(
        description="Spreadsheet Agent Task Server - HTTP API for guarded spreadsheet tasks"
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="Host to bind to")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    server = TaskServer(gateway_factory=default_gateway_factory())
    app = server.create_app()

    logger.info(f"Spreadsheet Agent Task Server starting on http://{args.host}:{args.port}")
    logger.info("Endpoints:")
    logger.info("   POST /sessions - Create session around a workbook")
    logger.info("   POST /tasks - Run a request")
    logger.info("   POST /tasks/{id}/reply - Answer a pending question")
    logger.info("   POST /tasks/{id}/cancel - Cancel at the next step boundary")
    logger.info("   POST /tasks/{id}/pause, /resume - Hold or continue a running task")
    logger.info("   GET /tasks/{id}?session_id= - Task status")
    logger.info("   GET /tasks/{id}/ledger?session_id= - Operation ledger")
    logger.info("   GET /health - Health check")

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
