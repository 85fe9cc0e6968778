"""Turn sinks: append-only records of finished runs.

The loop hands every completed run to its sink once, after the run.
Nothing here sits on the resilience path.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from toolloop.types import AgentResponse, Message, ToolResult, Usage

logger = logging.getLogger(__name__)

_TURNS_FILE = ".toolloop/turns.jsonl"


@dataclass
class Turn:
    """One finished ``run()``: what went in and what came out."""

    run_id: str
    input_messages: list[Message]
    messages: list[Message]
    content: str
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0

    @classmethod
    def from_response(
        cls,
        response: AgentResponse,
        input_messages: list[Message],
        started_at: float,
        finished_at: float,
    ) -> Turn:
        return cls(
            run_id=response.id,
            input_messages=list(input_messages),
            messages=list(response.messages),
            content=response.content,
            tool_results=list(response.tool_results),
            usage=response.usage,
            iterations=response.iterations,
            started_at=started_at,
            finished_at=finished_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "input_messages": [m.to_dict() for m in self.input_messages],
            "messages": [m.to_dict() for m in self.messages],
            "content": self.content,
            "tool_results": [r.to_dict() for r in self.tool_results],
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            },
            "iterations": self.iterations,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        return cls(
            run_id=data["run_id"],
            input_messages=[Message.from_dict(m) for m in data.get("input_messages", [])],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            content=data.get("content", ""),
            tool_results=[ToolResult(**r) for r in data.get("tool_results", [])],
            usage=Usage(**data.get("usage", {})),
            iterations=data.get("iterations", 0),
            started_at=data.get("started_at", 0.0),
            finished_at=data.get("finished_at", 0.0),
        )


@runtime_checkable
class TurnSink(Protocol):
    def append(self, turn: Turn) -> None: ...


class InMemoryTurnSink:
    def __init__(self) -> None:
        self.turns: list[Turn] = []

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)

    def __len__(self) -> int:
        return len(self.turns)


class JsonlTurnSink:
    """Appends one JSON object per turn to ``path``."""

    def __init__(self, path: str | Path = _TURNS_FILE) -> None:
        self.path = Path(path)

    def append(self, turn: Turn) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(turn.to_dict(), default=str) + "\n")
        logger.debug("Turn %s appended to %s", turn.run_id, self.path)

    def load(self) -> list[Turn]:
        """Read back every stored turn. Corrupt lines are skipped with a warning."""
        if not self.path.exists():
            return []
        turns: list[Turn] = []
        with self.path.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    turns.append(Turn.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping corrupt turn at %s:%d: %s", self.path, lineno, e)
        return turns
