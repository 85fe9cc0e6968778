"""toolloop: a resilient tool-calling agent loop."""

from __future__ import annotations

from toolloop.agent.loop import AgentExecutionLoop
from toolloop.cancellation import CancellationToken
from toolloop.config import AgentConfig
from toolloop.tools.base import BaseTool, FunctionTool, ToolRegistry, tool
from toolloop.types import AgentResponse, Message, ToolCall, ToolResult

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentExecutionLoop",
    "AgentResponse",
    "BaseTool",
    "CancellationToken",
    "FunctionTool",
    "Message",
    "ToolCall",
    "ToolRegistry",
    "ToolResult",
    "tool",
]
