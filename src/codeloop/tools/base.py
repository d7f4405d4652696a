"""Base tool definitions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator


class ToolResult(BaseModel):
    success: bool
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _error_iff_failed(self) -> ToolResult:
        if self.success:
            self.error = None
        elif not self.error:
            self.error = "Tool failed without an error message"
        return self

    @classmethod
    def ok(cls, content: str = "") -> ToolResult:
        return cls(success=True, content=content)

    @classmethod
    def fail(cls, error: str, content: str = "") -> ToolResult:
        return cls(success=False, content=content, error=error)

    def observation(self) -> str:
        if self.success:
            return self.content
        if self.content:
            return f"Error: {self.error}\n{self.content}"
        return f"Error: {self.error}"


class Tool(ABC):
    """Abstract tool.

    ``mutating`` tools change workspace files, ``read_only`` tools only look
    at them. Neither flag is set for tools such as shell commands whose effect
    is unknown.
    """

    name: str
    description: str
    input_schema: type[BaseModel]
    mutating: bool = False
    read_only: bool = False

    @abstractmethod
    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        """Execute the tool."""
        raise NotImplementedError

    def touched_paths(self, data: BaseModel) -> list[str]:
        """Workspace paths named by validated arguments."""
        path = getattr(data, "file_path", None)
        return [path] if isinstance(path, str) and path else []

    def openai_schema(self) -> dict[str, Any]:
        """Return OpenAI-compatible tool schema."""
        schema = self.input_schema.model_json_schema()
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }
