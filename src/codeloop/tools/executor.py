"""Tool dispatch that turns every outcome into a ToolResult."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from codeloop.failures import WorkspaceEscapeError
from codeloop.models.base import ToolCall
from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.registry import ToolRegistry
from codeloop.util.logging import get_logger, redact

logger = get_logger(__name__)


@dataclass
class ToolEffects:
    """Workspace paths a call reads or modifies, derived from its arguments."""

    read: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    mutating: bool = False
    read_only: bool = False


class ToolExecutor:
    """Executes tool calls against a registry.

    ``execute`` never raises: unknown tools, invalid arguments, paths outside
    the workspace and exceptions inside a tool all come back as a failed
    ``ToolResult`` carrying a readable error.
    """

    def __init__(self, registry: ToolRegistry, allow_tools: list[str] | None = None) -> None:
        self.registry = registry
        self.allow_tools = allow_tools

    def scoped(self, allowed: list[str] | None = None, exclude: list[str] | tuple[str, ...] = ()) -> ToolExecutor:
        """Executor over a subset of this executor's tools."""
        return ToolExecutor(self.registry.scoped(allowed, exclude), allow_tools=self.allow_tools)

    def catalog(self) -> list[dict[str, Any]]:
        return self.registry.openai_schemas()

    def tool_names(self) -> list[str]:
        return self.registry.names()

    def describe(self) -> str:
        return self.registry.describe()

    def execute(self, call: ToolCall) -> ToolResult:
        tool = self.registry.get(call.name)
        if tool is None:
            available = ", ".join(self.registry.names())
            return ToolResult.fail(f"Unknown tool: {call.name}. Available tools: {available}")
        if self.allow_tools is not None and call.name not in self.allow_tools:
            return ToolResult.fail(f"Tool {call.name} is not allowed in this run")
        logger.debug("Executing %s with %s", call.name, redact(json.dumps(call.arguments, default=str)[:500]))
        try:
            return tool.run(call.arguments)
        except ValidationError as exc:
            return self._invalid_arguments(tool, exc)
        except WorkspaceEscapeError as exc:
            return ToolResult.fail(str(exc))
        except FileNotFoundError as exc:
            return ToolResult.fail(f"{call.name} failed: file not found: {exc.filename or exc}")
        except (OSError, ValueError, TypeError, KeyError) as exc:
            return ToolResult.fail(f"{call.name} failed: {exc.__class__.__name__}: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Tool %s raised unexpectedly.", call.name)
            return ToolResult.fail(f"{call.name} failed: {exc.__class__.__name__}: {exc}")

    def effects(self, call: ToolCall) -> ToolEffects:
        """Describe the paths a call touches. Invalid arguments touch nothing."""
        tool = self.registry.get(call.name)
        if tool is None:
            return ToolEffects()
        try:
            data = tool.input_schema.model_validate(call.arguments)
            paths = tool.touched_paths(data)
        except (ValidationError, ValueError, TypeError, AttributeError):
            paths = []
        return ToolEffects(
            read=paths if tool.read_only else [],
            modified=paths if tool.mutating else [],
            mutating=tool.mutating,
            read_only=tool.read_only,
        )

    def _invalid_arguments(self, tool: Tool, exc: ValidationError) -> ToolResult:
        schema = tool.input_schema.model_json_schema()
        example = _schema_example(schema)
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
            for error in exc.errors()
        )
        return ToolResult.fail(
            f"Invalid arguments for {tool.name}: {problems}. "
            f"Expected input schema: {json.dumps(schema.get('properties', {}), ensure_ascii=False)}. "
            f"Minimal valid example arguments: {json.dumps(example, ensure_ascii=False)}. "
            "Fix arguments and retry."
        )


def _schema_example(schema: dict[str, Any]) -> dict[str, Any]:
    properties = schema.get("properties", {})
    required = schema.get("required", [])
    return {name: _example_value(properties.get(name, {})) for name in required}


def _example_value(schema: dict[str, Any]) -> Any:
    if "default" in schema:
        return schema["default"]
    examples = schema.get("examples")
    if examples:
        return examples[0]
    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        schema_type = schema_type[0]
    if schema_type == "string":
        return "value"
    if schema_type in {"integer", "number"}:
        return 1
    if schema_type == "boolean":
        return False
    if schema_type == "array":
        return []
    if schema_type == "object":
        return {}
    return None
