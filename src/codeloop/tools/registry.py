"""Tool registry."""

from __future__ import annotations

from typing import Iterable

from codeloop.tools.base import Tool


class ToolRegistry:
    """Registry of tools available to the agent."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def list(self) -> list[Tool]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def scoped(self, allowed: Iterable[str] | None = None, exclude: Iterable[str] = ()) -> ToolRegistry:
        """Return a new registry limited to ``allowed`` names minus ``exclude``."""
        allowed_set = set(allowed) if allowed is not None else None
        excluded = set(exclude)
        scoped = ToolRegistry()
        for tool in self._tools.values():
            if allowed_set is not None and tool.name not in allowed_set:
                continue
            if tool.name in excluded:
                continue
            scoped.register(tool)
        return scoped

    def openai_schemas(self) -> list[dict]:
        return [tool.openai_schema() for tool in self._tools.values()]

    def describe(self) -> str:
        """Plain-text catalog for prompts of models without native tool calls."""
        lines = []
        for tool in self._tools.values():
            properties = tool.input_schema.model_json_schema().get("properties", {})
            args = ", ".join(properties)
            lines.append(f"- {tool.name}({args}): {tool.description}")
        return "\n".join(lines)
