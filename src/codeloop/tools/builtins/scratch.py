"""Reading back tool output that was moved out of the conversation."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from codeloop.memory import RETRIEVAL_TOOL_NAME, ScratchStore
from codeloop.tools.base import Tool, ToolResult

DEFAULT_CHUNK_CHARS = 10_000
MAX_CHUNK_CHARS = 15_000


class ReadStoredResultInput(BaseModel):
    path: str = Field(description="Path or handle shown in the eviction notice")
    offset: int = Field(default=0, ge=0, description="First character to return")
    length: int = Field(default=DEFAULT_CHUNK_CHARS, ge=1, le=MAX_CHUNK_CHARS)


class ReadStoredResultTool(Tool):
    name = RETRIEVAL_TOOL_NAME
    description = "Read a slice of a large tool result that was saved to the cache directory."
    input_schema = ReadStoredResultInput
    read_only = True

    def __init__(self, store: ScratchStore) -> None:
        self.store = store

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ReadStoredResultInput.model_validate(data)
        try:
            content = self.store.load(payload.path)
        except KeyError as exc:
            return ToolResult.fail(str(exc.args[0]))
        total = len(content)
        if total and payload.offset >= total:
            return ToolResult.fail(f"Offset {payload.offset} is past the end of {payload.path} ({total} characters)")
        end = min(total, payload.offset + payload.length)
        text = f"Stored result {payload.path}, characters {payload.offset}-{end} of {total}:\n{content[payload.offset:end]}"
        if end < total:
            text += f'\n[{total - end} characters remain: {RETRIEVAL_TOOL_NAME}("{payload.path}", offset={end})]'
        return ToolResult.ok(text)
