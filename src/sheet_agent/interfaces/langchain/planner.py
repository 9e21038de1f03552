"""Planner gateway backed by an OpenAI chat model through LangChain."""

import logging
from typing import Any

from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from sheet_agent.config import OPENAI_MODEL
from sheet_agent.core.errors import PlannerParseError
from sheet_agent.core.planning import PlannerRequest, PlannerResponse


def message_text(content: Any) -> str:
    """Flatten chat message content into a string."""
    if isinstance(content, list):
        # Join list items if content is a list
        return " ".join(
            item.get("text", "") if isinstance(item, dict) else str(item) for item in content
        )
    return str(content)


class LangChainPlannerGateway:
    """Turn planner requests into chat completions.

    Args:
        api_key: OpenAI API key
        model: Chat model name
        temperature: Sampling temperature
        llm: Optional pre-built chat model, used instead of creating one
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = OPENAI_MODEL,
        temperature: float = 0,
        llm: Any = None,
    ) -> None:
        if llm is None:
            if not api_key:
                raise ValueError(
                    "No API key found. Please configure OPENAI_API_KEY in the environment or a .env file."
                )
            llm = ChatOpenAI(api_key=SecretStr(api_key), model=model, temperature=temperature)
        self.llm = llm
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", "{system_prompt}"),
                ("user", "{message}"),
            ]
        )
        self.logger = logging.getLogger(__name__)

    async def complete(self, request: PlannerRequest) -> PlannerResponse:
        """Run one completion.

        Raises:
            PlannerParseError: If the model call fails
        """
        llm = self.llm
        if request.response_format == "json" and isinstance(llm, ChatOpenAI):
            llm = llm.bind(response_format={"type": "json_object"})
        chain = self.prompt | llm
        try:
            response = await chain.ainvoke(
                {"system_prompt": request.system_prompt, "message": request.message}
            )
        except Exception as e:
            self.logger.error(f"Planner model call failed: {e}")
            raise PlannerParseError(f"Planner request failed: {e}") from e

        metadata = getattr(response, "response_metadata", None) or {}
        finish_reason = metadata.get("finish_reason")
        return PlannerResponse(
            message=message_text(getattr(response, "content", response)),
            truncated=finish_reason == "length",
            finish_reason=finish_reason,
        )
