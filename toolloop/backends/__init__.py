"""Backend interface and adapters."""

from __future__ import annotations

from toolloop.backends.base import Backend, StreamChunk, ToolCallAccumulator, ToolCallDelta, backend_generator

__all__ = [
    "Backend",
    "StreamChunk",
    "ToolCallAccumulator",
    "ToolCallDelta",
    "backend_generator",
]
