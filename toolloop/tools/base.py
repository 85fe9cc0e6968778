"""Base tool class and registry for extensible tool management."""

from __future__ import annotations

import importlib.metadata
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, get_type_hints

from toolloop.cancellation import CancellationToken, race
from toolloop.errors import Cancelled, ToolExecutionFailed, ToolNotFound
from toolloop.types import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ToolSchema:
    """JSON-schema description of a tool for the backend.

    This is what gets sent to the model so it knows
    how to call the tool.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {
            "type": "object",
            "properties": {},
            "required": [],
        }
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class BaseTool(ABC):
    """Abstract base class for all agent tools.

    Subclass this to create a new tool. Each tool bundles:
    - **name** — unique identifier (used in dispatch)
    - **schema** — JSON-schema for the backend
    - **parallel_safe** — whether it can run concurrently with other safe tools
    - **execute_validated()** — the actual implementation

    Arguments arrive already decoded; raise to report a failure, the
    loop turns it into an error-bearing tool result.

    Example::

        class Add(BaseTool):
            name = "add"
            parallel_safe = True

            def get_schema(self) -> ToolSchema:
                return ToolSchema(
                    name=self.name,
                    description="Add two numbers",
                    parameters={
                        "type": "object",
                        "properties": {
                            "a": {"type": "number"},
                            "b": {"type": "number"},
                        },
                        "required": ["a", "b"],
                    },
                )

            async def execute_validated(self, arguments: dict) -> Any:
                return {"result": arguments["a"] + arguments["b"]}
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    parallel_safe: ClassVar[bool] = False

    @abstractmethod
    def get_schema(self) -> ToolSchema:
        """Return the JSON-schema definition for backend consumption."""
        ...

    @abstractmethod
    async def execute_validated(self, arguments: dict[str, Any]) -> Any:
        """Execute the tool and return a JSON-serialisable result."""
        ...


_JSON_TYPES: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _schema_from_signature(fn: Callable[..., Any]) -> dict[str, Any]:
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in inspect.signature(fn).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(param.name)
        prop: dict[str, Any] = {}
        if annotation in _JSON_TYPES:
            prop["type"] = _JSON_TYPES[annotation]
        properties[param.name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(param.name)
    return {"type": "object", "properties": properties, "required": required}


class FunctionTool(BaseTool):
    """A tool backed by a plain function or coroutine function.

    Synchronous functions run inline on the event loop, so keep them quick.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
        parallel_safe: bool = False,
    ) -> None:
        self.fn = fn
        self.name = name or fn.__name__  # type: ignore[misc]
        self.description = description or inspect.getdoc(fn) or ""  # type: ignore[misc]
        self.parameters = parameters or _schema_from_signature(fn)
        self.parallel_safe = parallel_safe  # type: ignore[misc]

    def get_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)

    async def execute_validated(self, arguments: dict[str, Any]) -> Any:
        result = self.fn(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(
    name: str | None = None,
    description: str | None = None,
    parameters: dict[str, Any] | None = None,
    parallel_safe: bool = False,
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """Decorator turning a function into a ``FunctionTool``.

    Example::

        @tool(parallel_safe=True)
        async def add(a: float, b: float) -> dict:
            \"\"\"Add two numbers.\"\"\"
            return {"result": a + b}
    """

    def decorator(fn: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(fn, name, description, parameters, parallel_safe)

    return decorator


class ToolRegistry:
    """Registry that maps tool names to ``BaseTool`` instances.

    Tools can be registered:
    1. Programmatically via ``register()``
    2. Via Python entry points (``toolloop.tools`` group)

    The registry is shared, read-only state during a run.

    Example::

        registry = ToolRegistry()
        registry.register(Add())

        # Dispatch
        result = await registry.dispatch(ToolCall(id="c1", name="add", arguments={"a": 1, "b": 2}))

        # List definitions for the backend
        definitions = registry.list_definitions()
    """

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, tool: BaseTool) -> None:
        """Register a tool instance. Overwrites if name already exists."""
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no 'name' set")
        self._tools[tool.name] = tool

    def register_many(self, tools: list[BaseTool]) -> None:
        """Register multiple tools at once."""
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        """Remove a tool by name."""
        self._tools.pop(name, None)

    # ------------------------------------------------------------------
    # Discovery via entry points
    # ------------------------------------------------------------------

    def discover_plugins(self, group: str = "toolloop.tools") -> int:
        """Load tools from installed packages via entry points.

        Each entry point should resolve to either:
        - A ``BaseTool`` *class* (instantiated automatically)
        - A ``BaseTool`` *instance* (registered directly)
        - A *list* of ``BaseTool`` instances

        Returns the number of tools loaded.
        """
        loaded = 0
        for ep in importlib.metadata.entry_points(group=group):
            try:
                obj = ep.load()
                if isinstance(obj, list):
                    for item in obj:
                        if isinstance(item, BaseTool):
                            self.register(item)
                            loaded += 1
                elif isinstance(obj, BaseTool):
                    self.register(obj)
                    loaded += 1
                elif isinstance(obj, type) and issubclass(obj, BaseTool):
                    self.register(obj())
                    loaded += 1
                else:
                    logger.warning(
                        "Entry point '%s' did not resolve to a BaseTool: %s",
                        ep.name,
                        type(obj),
                    )
            except Exception:
                logger.exception("Failed to load tool entry point '%s'", ep.name)

        if loaded:
            logger.info("Discovered %d plugin tool(s) from '%s'", loaded, group)
        return loaded

    # ------------------------------------------------------------------
    # Lookup & Dispatch
    # ------------------------------------------------------------------

    def get(self, name: str) -> BaseTool | None:
        """Return a tool by name, or ``None``."""
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(
        self,
        call: ToolCall,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> ToolResult:
        """Execute a tool call. Failures come back as an error-bearing ``ToolResult``.

        Only cancellation propagates.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            error: Exception = ToolNotFound(call.name)
            logger.warning("%s", error)
            return ToolResult(tool_call_id=call.id, error=str(error))
        try:
            result = await race(
                tool.execute_validated(call.arguments),
                token,
                timeout=timeout,
                timeout_error=TimeoutError(f"timed out after {timeout}s"),
            )
        except Cancelled:
            raise
        except Exception as e:
            error = ToolExecutionFailed(call.name, f"{type(e).__name__}: {e}", cause=e)
            logger.warning("%s", error)
            return ToolResult(tool_call_id=call.id, error=str(error))
        return ToolResult(tool_call_id=call.id, result=result)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_definitions(self) -> list[dict[str, Any]]:
        """Return JSON-schema definitions for all registered tools.

        This is what gets sent to the backend so it can choose which tools
        to invoke.
        """
        return [tool.get_schema().to_dict() for tool in self._tools.values()]

    def list_names(self) -> list[str]:
        """Return names of all registered tools."""
        return list(self._tools.keys())

    def parallel_safe_names(self) -> frozenset[str]:
        """Return the set of tool names that are safe to run in parallel."""
        return frozenset(name for name, tool in self._tools.items() if tool.parallel_safe)
