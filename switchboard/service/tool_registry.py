from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union

from switchboard.logging import get_logger
from switchboard.service.errors import ToolExecutionFailed, ToolNotFound
from switchboard.service.permissions import ToolPermissions
from switchboard.storage.models import SessionContext, ToolKind

logger = get_logger(__name__)

ToolResult = Dict[str, Any]

DEFAULT_PARAMETER_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}


class ToolHandler(Protocol):
    """Common contract every tool variant implements."""

    async def invoke(
        self, parameters: Dict[str, Any], context: Optional[SessionContext]
    ) -> ToolResult:
        ...


class FunctionToolHandler:
    """Adapts a plain function (sync or async) to the handler contract."""

    def __init__(
        self,
        func: Callable[[Dict[str, Any], Optional[SessionContext]], Union[Any, Awaitable[Any]]],
    ) -> None:
        self.func = func

    async def invoke(
        self, parameters: Dict[str, Any], context: Optional[SessionContext]
    ) -> ToolResult:
        result = self.func(parameters, context)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, dict):
            return result
        return {"success": True, "data": result}


@dataclass
class ToolDefinition:
    name: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PARAMETER_SCHEMA))
    permissions: Optional[ToolPermissions] = None
    kind: ToolKind = ToolKind.CODE
    builtin: bool = False

    def describe(self) -> Dict[str, Any]:
        permissions = self.permissions or ToolPermissions()
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "kind": self.kind.value,
            "builtin": self.builtin,
            "channels": permissions.channels,
        }


def _is_failure(result: Any) -> bool:
    return isinstance(result, dict) and result.get("success") is False


class ToolRegistry:
    """Name to definition map with uniform failure reporting."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            logger.warning("tool_overwritten", tool=tool.name)
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool=tool.name, kind=tool.kind.value)

    def register_tools(self, tools: Iterable[ToolDefinition]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> bool:
        removed = self._tools.pop(name, None) is not None
        if removed:
            logger.debug("tool_unregistered", tool=name)
        return removed

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_all(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def get_names(self) -> List[str]:
        return list(self._tools.keys())

    def get_tools_for_channel(self, channel_type: str) -> List[ToolDefinition]:
        return [
            tool
            for tool in self._tools.values()
            if not tool.permissions
            or not tool.permissions.channels
            or channel_type in tool.permissions.channels
        ]

    def clear(self) -> None:
        self._tools.clear()

    def size(self) -> int:
        return len(self._tools)

    async def execute_tool(
        self,
        name: str,
        parameters: Dict[str, Any],
        context: Optional[SessionContext] = None,
    ) -> ToolResult:
        """Invoke a tool; raised errors and ``success: False`` results fail the same way."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name)

        try:
            result = await tool.handler.invoke(parameters, context)
        except Exception as exc:
            logger.error("tool_raised", tool=name, error=str(exc), error_type=type(exc).__name__)
            raise ToolExecutionFailed(
                name,
                str(exc) or type(exc).__name__,
                parameters=parameters,
                original_error=str(exc),
            ) from exc

        if _is_failure(result):
            error = (
                result.get("error")
                or result.get("message")
                or "Tool execution returned failure status"
            )
            logger.warning("tool_returned_failure", tool=name, error=error)
            raise ToolExecutionFailed(
                name,
                str(error),
                parameters=parameters,
                original_error=str(error),
                tool_result=result,
            )
        return result
