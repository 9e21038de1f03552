import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from langchain_core.callbacks import (
    AsyncCallbackManagerForToolRun,
    CallbackManagerForToolRun,
)
from langchain_core.tools import BaseTool
from pydantic import BaseModel

from sheet_agent.core.models import ToolInvocationResult
from sheet_agent.core.tool_registry import ToolInvoker, ToolRegistry

Executor = Callable[[str, dict[str, Any]], Awaitable[ToolInvocationResult]]


class SheetTool(BaseTool):
    """LangChain view of one registry tool.

    Calls go through an injected executor, so the caller decides whether
    they are guarded (snapshot, ledger, verification) or raw.
    """

    name: str
    description: str
    args_schema: type[BaseModel] | None = None

    # Explicit __init__ needed for mypy to recognize inherited constructor from BaseTool
    def __init__(self, executor: Executor, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._executor = executor

    def _run(
        self, run_manager: CallbackManagerForToolRun | None = None, **kwargs: Any
    ) -> str:
        """Run the tool synchronously"""
        return asyncio.run(self._call(kwargs))

    async def _arun(
        self, run_manager: AsyncCallbackManagerForToolRun | None = None, **kwargs: Any
    ) -> str:
        """Run the tool asynchronously"""
        return await self._call(kwargs)

    async def _call(self, params: dict[str, Any]) -> str:
        params = {key: value for key, value in params.items() if value is not None}
        result = await self._executor(self.name, params)
        if not result.success:
            return f"Error: {result.error}"
        return result.output


class LangChainToolAdapter:
    """Registry tool backed by any LangChain ``BaseTool``.

    String output is a success unless it starts with "Error:"; a raised
    exception is left for the invoker to normalize.

    Args:
        tool: LangChain tool to wrap
        is_write: Whether the tool mutates the workbook
        destructive: Whether the tool removes structure or data wholesale
    """

    def __init__(self, tool: BaseTool, is_write: bool = False, destructive: bool = False) -> None:
        self.tool = tool
        self.name = tool.name
        self.description = tool.description
        self.input_model = tool.args_schema if isinstance(tool.args_schema, type) else None
        self.is_write = is_write
        self.destructive = destructive

    async def execute(self, params: dict[str, Any]) -> ToolInvocationResult:
        output = await self.tool.ainvoke(params)
        text = output if isinstance(output, str) else str(output)
        if text.startswith("Error:"):
            return ToolInvocationResult.failure(text[len("Error:") :].strip(), output=text)
        return ToolInvocationResult(success=True, output=text, data=output)


def create_sheet_tools(
    registry: ToolRegistry, executor: Executor | None = None
) -> list[SheetTool]:
    """Wrap every registered tool for use in LangChain agents.

    Args:
        registry: Tools to expose
        executor: Call path; defaults to an unguarded ToolInvoker

    Returns:
        One SheetTool per registered tool
    """
    if executor is None:
        executor = ToolInvoker(registry).invoke

    tools = []
    for name in registry.names():
        tool = registry.require(name)
        tools.append(
            SheetTool(
                executor,
                name=name,
                description=getattr(tool, "description", "") or name,
                args_schema=getattr(tool, "input_model", None),
            )
        )
    return tools
