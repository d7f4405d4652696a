"""Todo-list tracking tool."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from codeloop.state import TodoItem
from codeloop.tools.base import Tool, ToolResult

_STATUS_MARKS = {"pending": "[ ]", "in_progress": "[~]", "completed": "[x]"}


class WriteTodosInput(BaseModel):
    todos: list[TodoItem] = Field(description="The full, updated todo list")


class WriteTodosTool(Tool):
    """Replaces the run's todo list. The executor copies it into the run state."""

    name = "write_todos"
    description = (
        "Record the plan as a todo list. Send the complete list every time, "
        "with each item's status set to pending, in_progress or completed."
    )
    input_schema = WriteTodosInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = WriteTodosInput.model_validate(data)
        done = sum(1 for item in payload.todos if item.status == "completed")
        lines = [f"{_STATUS_MARKS[item.status]} {item.task}" for item in payload.todos]
        header = f"Todo list updated ({done}/{len(payload.todos)} completed):"
        return ToolResult.ok("\n".join([header, *lines]))

    def touched_paths(self, data: BaseModel) -> list[str]:
        return []
