"""Small general-purpose tools shipped with the CLI."""

from __future__ import annotations

import ast
import operator
from datetime import datetime, timezone
from typing import Any

from toolloop.tools.base import BaseTool, ToolRegistry, ToolSchema

_BIN_OPS: dict[type, Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Any] = {ast.UAdd: operator.pos, ast.USub: operator.neg}

MAX_EXPONENT = 100


def evaluate_expression(expression: str) -> float | int:
    """Evaluate an arithmetic expression without ``eval``.

    Only numbers, + - * / // % ** and parentheses are accepted.
    """
    tree = ast.parse(expression, mode="eval")

    def _eval(node: ast.AST) -> float | int:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(
            node.value, bool
        ):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            left, right = _eval(node.left), _eval(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
                raise ValueError(f"Exponent too large: {right}")
            return _BIN_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](_eval(node.operand))
        raise ValueError(f"Unsupported expression element: {type(node).__name__}")

    return _eval(tree)


class CalculatorTool(BaseTool):
    name = "calculator"
    description = "Evaluate an arithmetic expression such as '(2 + 3) * 4'."
    parallel_safe = True

    def get_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters={
                "type": "object",
                "properties": {
                    "expression": {"type": "string", "description": "Arithmetic expression"},
                },
                "required": ["expression"],
            },
        )

    async def execute_validated(self, arguments: dict[str, Any]) -> Any:
        return {"result": evaluate_expression(str(arguments["expression"]))}


class CurrentTimeTool(BaseTool):
    name = "current_time"
    description = "Return the current UTC date and time in ISO 8601 format."
    parallel_safe = True

    def get_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description)

    async def execute_validated(self, arguments: dict[str, Any]) -> Any:
        return {"utc": datetime.now(timezone.utc).isoformat(timespec="seconds")}


def create_default_registry(discover: bool = False) -> ToolRegistry:
    """Registry with the built-in tools, plus entry-point plugins when ``discover`` is set."""
    registry = ToolRegistry()
    registry.register_many([CalculatorTool(), CurrentTimeTool()])
    if discover:
        registry.discover_plugins()
    return registry
