"""Core data model shared by the loop, pipeline, resilience and memory layers."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


def new_id(prefix: str) -> str:
    """Return a short random identifier such as ``msg_3f9a1c0b2d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(StrEnum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


@dataclass
class ToolCall:
    """A backend-issued request to invoke a named tool."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass
class ToolResult:
    """Outcome of one tool call. Exactly one of ``result``/``error`` is meaningful."""

    tool_call_id: str
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        """Render the result as the text fed back to the backend."""
        if self.error is not None:
            return self.error
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {"tool_call_id": self.tool_call_id, "result": self.result, "error": self.error}


@dataclass
class Message:
    """One conversation entry.

    Assistant messages that request tools carry them in
    ``metadata["tool_calls"]``; tool messages carry
    ``metadata["tool_call_id"]`` linking them back to the request.
    """

    role: Role
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        **metadata: Any,
    ) -> Message:
        if tool_calls:
            metadata["tool_calls"] = [tc.to_dict() for tc in tool_calls]
        return cls(role=Role.ASSISTANT, content=content, metadata=metadata)

    @classmethod
    def tool_result(cls, result: ToolResult, tool_name: str = "") -> Message:
        metadata: dict[str, Any] = {"tool_call_id": result.tool_call_id, "tool_name": tool_name}
        if result.error is not None:
            metadata["error"] = True
        return cls(role=Role.TOOL, content=result.to_content(), metadata=metadata)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [ToolCall.from_dict(tc) for tc in self.metadata.get("tool_calls", [])]

    @property
    def tool_call_id(self) -> str | None:
        return self.metadata.get("tool_call_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            id=data.get("id") or new_id("msg"),
            timestamp=data.get("timestamp", time.time()),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass
class CompletionRequest:
    messages: list[Message]
    tools: list[dict[str, Any]] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False

    def fingerprint_payload(self) -> dict[str, Any]:
        """Semantic content of the request, used to derive a deduplication key.

        Message ids and timestamps are excluded so that two logically
        identical requests built independently share a key.
        """
        return {
            "messages": [
                {"role": m.role.value, "content": m.content, "tool_calls": m.metadata.get("tool_calls"),
                 "tool_call_id": m.metadata.get("tool_call_id")}
                for m in self.messages
            ],
            "tools": [t.get("name") for t in self.tools or []],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


@dataclass
class CompletionResponse:
    content: str
    tool_calls: list[ToolCall] | None = None
    usage: Usage | None = None
    finish_reason: FinishReason = FinishReason.STOP
    id: str = field(default_factory=lambda: new_id("resp"))

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class AgentResponse:
    """Final outcome of one ``AgentExecutionLoop.run`` call."""

    content: str
    messages: list[Message]
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    id: str = field(default_factory=lambda: new_id("run"))


@dataclass
class AgentContext:
    """Per-run state.

    ``messages`` is owned by the loop and only ever appended to.
    ``tools`` is the shared, read-only registry. ``metadata`` is scratch
    space for stages (cache hits, retry counters and similar).
    """

    messages: list[Message]
    tools: Any
    metadata: dict[str, Any] = field(default_factory=dict)
