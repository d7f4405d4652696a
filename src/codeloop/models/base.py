"""Base model interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class ToolCall(BaseModel):
    id: str | None = None
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class BaseChatModel(ABC):
    """Abstract chat model interface.

    ``supports_tools`` tells the loop whether the backend accepts a tool
    catalog and answers with structured calls. When it is false the catalog is
    rendered into the system prompt and calls are recovered from free text.
    """

    supports_tools: bool = True
    model: str = ""

    @abstractmethod
    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        timeout: float | None = None,
    ) -> ModelResponse:
        """Send chat request and return model response.

        ``timeout`` caps this single request, letting the caller honour an
        overall deadline. Failures raise ``ModelTransportError`` subclasses.
        """
        raise NotImplementedError

    def with_model(self, model: str) -> BaseChatModel:
        """Return a client for a different model on the same backend."""
        return self
