"""Planner gateway backed by a remote chat endpoint."""

import logging

import httpx

from sheet_agent.config import PLANNER_BACKEND_URL, PLANNER_TIMEOUT
from sheet_agent.core.errors import PlannerParseError
from sheet_agent.core.planning import PlannerRequest, PlannerResponse
from sheet_agent.utils.constants import PLANNER_CHAT_PATH
from sheet_agent.utils.http_client import post_json


class HttpPlannerGateway:
    """Send planner requests to ``POST {base_url}/agent/chat``.

    The backend receives ``{message, systemPrompt, responseFormat}`` and
    answers ``{message, truncated?}``.

    Args:
        base_url: Backend root URL; defaults to PLANNER_BACKEND_URL
        timeout: Request timeout in seconds
        headers: Extra headers, e.g. authorization
        client: Optional shared httpx client
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = PLANNER_TIMEOUT,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        base_url = base_url or PLANNER_BACKEND_URL
        if not base_url:
            raise ValueError("No planner backend configured. Set PLANNER_BACKEND_URL.")
        self.url = base_url.rstrip("/") + PLANNER_CHAT_PATH
        self.timeout = timeout
        self.headers = headers or {}
        self.client = client
        self.logger = logging.getLogger(__name__)

    async def complete(self, request: PlannerRequest) -> PlannerResponse:
        """Send one request to the backend.

        Raises:
            PlannerParseError: If the backend is unreachable or answers nonsense
        """
        payload: dict[str, object] = {
            "message": request.message,
            "systemPrompt": request.system_prompt,
            "responseFormat": request.response_format,
        }
        try:
            data = await post_json(
                self.url, payload, headers=self.headers, timeout=self.timeout, client=self.client
            )
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Planner request to {self.url} failed: {e}")
            raise PlannerParseError(f"Planner request failed: {e}") from e

        message = data.get("message")
        if not isinstance(message, str):
            raise PlannerParseError("Planner response has no message", raw=str(data))
        finish_reason = data.get("finishReason")
        return PlannerResponse(
            message=message,
            truncated=bool(data.get("truncated", False)),
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )
