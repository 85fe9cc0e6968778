"""The agent execution loop and its stream events."""

from __future__ import annotations

from toolloop.agent.events import AgentEvent, EventKind
from toolloop.agent.loop import AgentExecutionLoop, partition_tool_calls

__all__ = [
    "AgentEvent",
    "AgentExecutionLoop",
    "EventKind",
    "partition_tool_calls",
]
