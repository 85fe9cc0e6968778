"""Tool interface, registry and built-in tools."""

from __future__ import annotations

from toolloop.tools.base import BaseTool, FunctionTool, ToolRegistry, ToolSchema, tool
from toolloop.tools.builtins import CalculatorTool, CurrentTimeTool, create_default_registry

__all__ = [
    "BaseTool",
    "CalculatorTool",
    "CurrentTimeTool",
    "FunctionTool",
    "ToolRegistry",
    "ToolSchema",
    "create_default_registry",
    "tool",
]
