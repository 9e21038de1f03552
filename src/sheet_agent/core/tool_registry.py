"""Capability-keyed tool registry and a non-retrying invoker."""

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from sheet_agent.core.errors import ToolNotFoundError
from sheet_agent.core.models import ToolInvocationResult


@runtime_checkable
class Tool(Protocol):
    """Anything with a name and an async ``execute(params)`` is a tool."""

    name: str

    async def execute(
        self, params: dict[str, Any]
    ) -> ToolInvocationResult | Mapping[str, Any]: ...


class FunctionTool:
    """Tool backed by an async function, with optional pydantic input schema.

    Args:
        name: Registry key
        func: Coroutine function receiving the validated input
        description: One line shown to the planner
        input_model: Pydantic model validating the parameter map
        is_write: Whether the tool mutates the resource
        destructive: Whether the tool removes structure or data wholesale
        alternate: Name of a degraded tool serving the same intent
    """

    def __init__(
        self,
        name: str,
        func: Callable[[Any], Awaitable[ToolInvocationResult]],
        description: str = "",
        input_model: type[BaseModel] | None = None,
        is_write: bool = False,
        destructive: bool = False,
        alternate: str | None = None,
    ) -> None:
        self.name = name
        self.func = func
        self.description = description
        self.input_model = input_model
        self.is_write = is_write
        self.destructive = destructive
        self.alternate = alternate

    async def execute(self, params: dict[str, Any]) -> ToolInvocationResult:
        if self.input_model is None:
            return await self.func(params)
        return await self.func(self.input_model.model_validate(params))

    def schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.input_model is not None:
            schema["parameters"] = self.input_model.model_json_schema()
        return schema


class ToolRegistry:
    """Registry of tools keyed by name.

    Instances are injected into engines; there is no module-level registry.
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self.logger = logging.getLogger(__name__)
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            self.logger.info(f"Replacing registered tool: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def is_mutating(self, name: str) -> bool:
        return bool(getattr(self._tools.get(name), "is_write", False))

    def is_destructive(self, name: str) -> bool:
        return bool(getattr(self._tools.get(name), "destructive", False))

    def alternate_for(self, name: str) -> str | None:
        alternate = getattr(self._tools.get(name), "alternate", None)
        return alternate if alternate in self._tools else None

    def describe(self) -> list[dict[str, Any]]:
        """Tool schemas with names and descriptions, for planner prompts."""
        schemas = []
        for tool in self._tools.values():
            if isinstance(tool, FunctionTool):
                schemas.append(tool.schema())
            else:
                schemas.append(
                    {
                        "name": tool.name,
                        "description": getattr(tool, "description", ""),
                    }
                )
        return schemas


class ToolInvoker:
    """Dispatch a named operation and normalize whatever comes back.

    A returned error and a raised exception produce the same failing
    result. The invoker never retries.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry
        self.logger = logging.getLogger(__name__)
        self.call_count = 0

    async def invoke(self, name: str, params: dict[str, Any]) -> ToolInvocationResult:
        tool = self.registry.get(name)
        if tool is None:
            self.logger.warning(f"Tool not found: {name}")
            return ToolInvocationResult.failure(f"Tool not found: {name}")

        self.call_count += 1
        try:
            raw = await tool.execute(dict(params))
        except ValidationError as e:
            return ToolInvocationResult.failure(
                f"Invalid parameters for {name}: {_summarize_validation(e)}"
            )
        except Exception as e:
            self.logger.error(f"Tool {name} raised {type(e).__name__}: {e}")
            return ToolInvocationResult.failure(f"{type(e).__name__}: {e}")

        return normalize_result(raw)


def normalize_result(raw: Any) -> ToolInvocationResult:
    """Coerce a tool return value into a ToolInvocationResult."""
    if isinstance(raw, ToolInvocationResult):
        result = raw
    elif isinstance(raw, Mapping):
        result = ToolInvocationResult(
            success=bool(raw.get("success", False)),
            output=str(raw.get("output", "")),
            data=raw.get("data"),
            error=raw.get("error"),
        )
    else:
        result = ToolInvocationResult(success=True, output=str(raw))

    if result.error and result.success:
        # An error field always wins over a claimed success
        return result.model_copy(update={"success": False})
    if not result.success and not result.error:
        return result.model_copy(
            update={"error": result.output or "Tool reported failure"}
        )
    return result


def _summarize_validation(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "input"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
