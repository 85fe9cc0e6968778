"""Events yielded by ``AgentExecutionLoop.stream``."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EventKind(StrEnum):
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    DONE = "done"
    INTERRUPTED = "interrupted"


@dataclass
class AgentEvent:
    """One streamed step of a run.

    Payloads by kind:
    - ``content``: ``{"delta": str}``
    - ``tool_call``: ``{"tool_call": ToolCall}``
    - ``tool_result``: ``{"tool_result": ToolResult, "tool_name": str}``
    - ``done``: ``{"response": AgentResponse}``
    - ``interrupted``: ``{"content": str, "reason": str | None}``
    """

    kind: EventKind
    run_id: str
    iteration: int
    payload: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)
