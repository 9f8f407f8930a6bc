"""Tool registry and built-in tools."""

from parley.tools.registry import ToolRegistry, ToolSpec, validate_tool_name

__all__ = ["ToolRegistry", "ToolSpec", "validate_tool_name"]
