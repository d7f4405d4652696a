"""Mock chat model for offline testing."""

from __future__ import annotations

import json
from typing import Any

from codeloop.models.base import BaseChatModel, ModelResponse, ToolCall


class MockChatModel(BaseChatModel):
    """Deterministic mock model used when no backend is configured.

    Scripted responses are returned in order and scripted exceptions are
    raised. Once the script runs out the mock answers the last user message,
    or calls a tool when that message reads ``USE_TOOL: <name> <json-args>``.
    """

    def __init__(
        self,
        scripted: list[ModelResponse | Exception] | None = None,
        supports_tools: bool = True,
        model: str = "mock",
    ) -> None:
        self._scripted = list(scripted or [])
        self.supports_tools = supports_tools
        self.model = model
        self.calls: list[list[dict[str, Any]]] = []

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        timeout: float | None = None,
    ) -> ModelResponse:
        self.calls.append([dict(message) for message in messages])
        if self._scripted:
            item = self._scripted.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        last = messages[-1].get("content") if messages else ""
        if isinstance(last, str) and last.startswith("USE_TOOL:"):
            response = self._tool_call_from_prompt(last, tools)
            if response is not None:
                return response
        return ModelResponse(content=f"Mock response to: {last}")

    @property
    def remaining(self) -> int:
        return len(self._scripted)

    def _tool_call_from_prompt(
        self, prompt: str, tools: list[dict[str, Any]] | None
    ) -> ModelResponse | None:
        marker = "USE_TOOL:"
        stripped = prompt[len(marker) :].strip()
        if not stripped:
            return ModelResponse(content=f"Mock response to: {prompt} (error: missing tool name)")
        parts = stripped.split(maxsplit=1)
        tool_name = parts[0]
        tool_args = parts[1] if len(parts) > 1 else "{}"
        if tools:
            tool_names = {tool["function"]["name"] for tool in tools}
            if tool_name not in tool_names:
                return ModelResponse(content=f"Mock response to: {prompt} (error: unknown tool)")
        try:
            arguments = json.loads(tool_args)
        except json.JSONDecodeError:
            return ModelResponse(content=f"Mock response to: {prompt} (error: invalid JSON args)")
        if not isinstance(arguments, dict):
            return ModelResponse(content=f"Mock response to: {prompt} (error: args must be object)")
        return ModelResponse(tool_calls=[ToolCall(name=tool_name, arguments=arguments)])
