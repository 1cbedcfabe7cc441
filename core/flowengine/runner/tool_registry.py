"""Tool registration and dispatch for agent-mode nodes."""

import asyncio
import importlib.util
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flowengine.llm.provider import Tool, ToolResult, ToolUse

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}


@dataclass
class RegisteredTool:
    """A tool with its executor function. Sync executors run in a worker thread."""

    tool: Tool
    executor: Callable[[dict], Any]
    is_async: bool = False


class ToolRegistry:
    """
    Holds the tools an agent node may call.

    Sources:
    1. Functions registered with ``register_function`` or the ``@tool`` decorator
    2. A ``tools.py`` module passed to ``discover_from_module``
    3. Explicit ``register(name, tool, executor)``
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
        is_async: bool | None = None,
    ) -> None:
        if is_async is None:
            is_async = inspect.iscoroutinefunction(executor)
        self._tools[name] = RegisteredTool(tool=tool, executor=executor, is_async=is_async)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a function as a tool, generating the parameter schema
        from its signature. Coroutine functions are awaited on the event
        loop; plain functions run in a worker thread.
        """
        tool_name = name or func.__name__
        tool_desc = description or func.__doc__ or f"Execute {tool_name}"

        properties = {}
        required = []
        for param_name, param in inspect.signature(func).parameters.items():
            if param_name in ("self", "cls"):
                continue
            param_type = _JSON_TYPES.get(param.annotation, "string")
            properties[param_name] = {"type": param_type}
            if param.default == inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc.strip(),
            parameters={"type": "object", "properties": properties, "required": required},
        )

        def executor(inputs: dict) -> Any:
            return func(**inputs)

        self.register(tool_name, tool, executor, is_async=inspect.iscoroutinefunction(func))

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load ``@tool``-decorated functions from a Python file.

        Returns:
            Number of tools discovered
        """
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("flow_tools", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0
        for attr in dir(module):
            obj = getattr(module, attr)
            if callable(obj) and hasattr(obj, "_tool_metadata"):
                metadata = obj._tool_metadata
                self.register_function(
                    obj,
                    name=metadata.get("name", attr),
                    description=metadata.get("description"),
                )
                count += 1

        logger.info(f"Discovered {count} tools in {module_path}")
        return count

    def get_tools(self, names: list[str] | None = None) -> list[Tool]:
        """Tool definitions, optionally restricted to ``names`` (unknown names ignored)."""
        if names is None:
            return [rt.tool for rt in self._tools.values()]
        return [self._tools[n].tool for n in names if n in self._tools]

    async def execute(self, tool_use: ToolUse) -> ToolResult:
        """
        Run one tool call. Failures come back as error results for the
        model to read, never as exceptions.
        """
        registered = self._tools.get(tool_use.name)
        if registered is None:
            return ToolResult(
                tool_use_id=tool_use.id,
                content=json.dumps({"error": f"Unknown tool: {tool_use.name}"}),
                is_error=True,
            )

        try:
            if registered.is_async:
                result = registered.executor(tool_use.input)
            else:
                result = await asyncio.to_thread(registered.executor, tool_use.input)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Tool '{tool_use.name}' failed: {e}")
            return ToolResult(
                tool_use_id=tool_use.id,
                content=json.dumps({"error": str(e)}),
                is_error=True,
            )

        if isinstance(result, ToolResult):
            return result
        return ToolResult(
            tool_use_id=tool_use.id,
            content=result if isinstance(result, str) else json.dumps(result, default=str),
            is_error=False,
        )

    def get_registered_names(self) -> list[str]:
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        return name in self._tools


def tool(description: str | None = None, name: str | None = None) -> Callable:
    """
    Decorator to mark a function as a tool.

    Usage:
        @tool(description="Look up a ticker's last price")
        async def get_quote(symbol: str) -> dict:
            return {"symbol": symbol, "price": 101.5}
    """

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {
            "name": name or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
