"""Tool registration for agent-mode nodes."""

from flowengine.runner.tool_registry import RegisteredTool, ToolRegistry, tool

__all__ = ["ToolRegistry", "RegisteredTool", "tool"]
