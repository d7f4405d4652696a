"""Client for the native Ollama chat API."""

from __future__ import annotations

import json
import time
from typing import Any, Callable

import httpx

from codeloop.models.base import BaseChatModel, ModelResponse, ToolCall
from codeloop.models.errors import (
    BackendResponseError,
    ModelTransportError,
    classify_http_error,
    status_error,
)
from codeloop.util.logging import get_logger

logger = get_logger(__name__)


class OllamaChatModel(BaseChatModel):
    """HTTP client for ``/api/chat`` on an Ollama server.

    Native tool calling is optional because many local models ignore the
    ``tools`` field. With ``supports_tools=False`` the loop injects the tool
    catalog into the prompt and parses calls from the reply text instead.
    """

    backend_name = "Ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "qwen2.5-coder:7b",
        timeout_seconds: int = 300,
        temperature: float = 0.7,
        top_p: float = 0.9,
        supports_tools: bool = False,
        max_attempts: int = 2,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        normalized = base_url.strip()
        if not normalized.startswith(("http://", "https://")):
            normalized = f"http://{normalized}"
        self.base_url = normalized.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.top_p = top_p
        self.supports_tools = supports_tools
        self.max_attempts = max(1, max_attempts)
        self.transport = transport
        self._sleep = sleep

    def with_model(self, model: str) -> OllamaChatModel:
        return OllamaChatModel(
            base_url=self.base_url,
            model=model,
            timeout_seconds=self.timeout_seconds,
            temperature=self.temperature,
            top_p=self.top_p,
            supports_tools=self.supports_tools,
            max_attempts=self.max_attempts,
            transport=self.transport,
            sleep=self._sleep,
        )

    def _request_payload(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [_to_ollama_message(message) for message in messages],
            "stream": False,
            "options": {"temperature": self.temperature, "top_p": self.top_p},
        }
        if tools and self.supports_tools:
            payload["tools"] = tools
        return payload

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        timeout: float | None = None,
    ) -> ModelResponse:
        url = f"{self.base_url}/api/chat"
        payload = self._request_payload(messages, tools)
        seconds = self.timeout_seconds if timeout is None else min(self.timeout_seconds, timeout)
        data = self._post(url, payload, max(seconds, 1))
        if data.get("error"):
            raise BackendResponseError(
                f"Ollama returned an error: {data['error']}", self.base_url
            )
        message = data.get("message")
        if not isinstance(message, dict):
            raise BackendResponseError(
                "Invalid response from Ollama API: missing message content", self.base_url
            )
        content = message.get("content")
        calls: list[ToolCall] = []
        for index, raw in enumerate(message.get("tool_calls") or []):
            function = raw.get("function") or {}
            name = function.get("name")
            if not isinstance(name, str) or not name:
                continue
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {}
            if not isinstance(arguments, dict):
                arguments = {}
            calls.append(ToolCall(id=raw.get("id") or f"call_{index}", name=name, arguments=arguments))
        if not calls and not content:
            raise BackendResponseError(
                "Invalid response from Ollama API: missing message content", self.base_url
            )
        return ModelResponse(content=content if isinstance(content, str) else "", tool_calls=calls)

    def list_models(self) -> list[str]:
        """Return model names installed on the server."""
        url = f"{self.base_url}/api/tags"
        try:
            with httpx.Client(timeout=httpx.Timeout(5), transport=self.transport) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, self.base_url, self.backend_name) from exc
        if response.status_code >= 400:
            raise status_error(response.status_code, response.text, self.base_url, self.backend_name)
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise BackendResponseError("Invalid response from Ollama API", self.base_url) from exc
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise BackendResponseError("Invalid response from Ollama API", self.base_url)
        return [str(item.get("name")) for item in models if isinstance(item, dict)]

    def _post(self, url: str, payload: dict[str, Any], seconds: float) -> dict[str, Any]:
        last_error: ModelTransportError | None = None
        for attempt in range(self.max_attempts):
            try:
                with httpx.Client(timeout=httpx.Timeout(seconds), transport=self.transport) as client:
                    response = client.post(url, json=payload)
            except httpx.HTTPError as exc:
                raise classify_http_error(exc, self.base_url, self.backend_name) from exc
            if response.status_code >= 500:
                last_error = status_error(
                    response.status_code, response.text, self.base_url, self.backend_name
                )
                if attempt + 1 < self.max_attempts:
                    logger.warning("Ollama returned %s, retrying.", response.status_code)
                    self._sleep(2**attempt)
                continue
            if response.status_code >= 400:
                raise status_error(response.status_code, response.text, self.base_url, self.backend_name)
            try:
                data = response.json()
            except json.JSONDecodeError as exc:
                raise BackendResponseError("Malformed JSON response", self.base_url) from exc
            if not isinstance(data, dict):
                raise BackendResponseError("Malformed JSON response", self.base_url)
            return data
        assert last_error is not None
        raise last_error


def _to_ollama_message(message: dict[str, Any]) -> dict[str, Any]:
    role = message.get("role", "user")
    converted: dict[str, Any] = {"role": role, "content": message.get("content", "")}
    if role == "tool" and message.get("name"):
        converted["tool_name"] = message["name"]
    if role == "assistant" and message.get("tool_calls"):
        converted["tool_calls"] = [
            {"function": {"name": call.get("name"), "arguments": call.get("arguments", {})}}
            for call in message["tool_calls"]
        ]
    return converted
