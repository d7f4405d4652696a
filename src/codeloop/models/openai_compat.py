"""OpenAI-compatible chat model client."""

from __future__ import annotations

import json
import time
from typing import Any, Callable
from urllib.parse import urlparse, urlunparse

import httpx

from codeloop.models.base import BaseChatModel, ModelResponse, ToolCall
from codeloop.models.errors import (
    BackendResponseError,
    ModelTransportError,
    classify_http_error,
    status_error,
)
from codeloop.util.json_repair import JsonRepairError, repair_json
from codeloop.util.logging import get_logger

logger = get_logger(__name__)


class OpenAICompatChatModel(BaseChatModel):
    """HTTP client for OpenAI-compatible chat/completions."""

    backend_name = "OpenAI-compatible backend"

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout_seconds: int = 60,
        max_response_bytes: int = 4_000_000,
        temperature: float = 0.7,
        extra_headers: dict[str, str] | None = None,
        supports_tools: bool = True,
        max_attempts: int = 3,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        normalized = base_url.strip()
        if not normalized.startswith(("http://", "https://")):
            normalized = f"http://{normalized}"
        self.base_url = normalized.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_response_bytes = max_response_bytes
        self.temperature = temperature
        self.extra_headers = extra_headers or {}
        self.supports_tools = supports_tools
        self.max_attempts = max(1, max_attempts)
        self.transport = transport
        self._sleep = sleep

    def with_model(self, model: str) -> OpenAICompatChatModel:
        return OpenAICompatChatModel(
            base_url=self.base_url,
            api_key=self.api_key,
            model=model,
            timeout_seconds=self.timeout_seconds,
            max_response_bytes=self.max_response_bytes,
            temperature=self.temperature,
            extra_headers=self.extra_headers,
            supports_tools=self.supports_tools,
            max_attempts=self.max_attempts,
            transport=self.transport,
            sleep=self._sleep,
        )

    def _build_url(self) -> str:
        parsed = urlparse(self.base_url)
        path = parsed.path or ""
        if path in {"", "/"}:
            base_path = "/v1"
        else:
            base_path = path.rstrip("/")
            segments = [segment for segment in base_path.split("/") if segment]
            if "v1" not in segments:
                base_path = f"{base_path}/v1"
        if base_path.endswith("/chat/completions"):
            final_path = base_path
        else:
            final_path = f"{base_path}/chat/completions"
        return urlunparse(parsed._replace(path=final_path, params="", query="", fragment=""))

    def _request_payload(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [_to_openai_message(message) for message in messages],
            "temperature": self.temperature,
        }
        if tools and self.supports_tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        timeout: float | None = None,
    ) -> ModelResponse:
        url = self._build_url()
        headers = dict(self.extra_headers)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = self._request_payload(messages, tools)
        seconds = self.timeout_seconds if timeout is None else min(self.timeout_seconds, timeout)
        request_timeout = httpx.Timeout(max(seconds, 1))

        last_error: ModelTransportError | None = None
        for attempt in range(self.max_attempts):
            try:
                with httpx.Client(timeout=request_timeout, transport=self.transport) as client:
                    response = client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as exc:
                raise classify_http_error(exc, self.base_url, self.backend_name) from exc
            if response.status_code == 429 or response.status_code >= 500:
                last_error = status_error(
                    response.status_code, response.text, self.base_url, self.backend_name
                )
                if attempt + 1 < self.max_attempts:
                    logger.warning(
                        "Retryable status %s from %s (attempt %s).",
                        response.status_code,
                        self.base_url,
                        attempt + 1,
                    )
                    self._sleep(2**attempt)
                continue
            if response.status_code >= 400:
                raise status_error(
                    response.status_code, response.text, self.base_url, self.backend_name
                )
            if len(response.content) > self.max_response_bytes:
                raise BackendResponseError("Response too large", self.base_url)
            try:
                data = response.json()
            except json.JSONDecodeError as exc:
                raise BackendResponseError("Malformed JSON response", self.base_url) from exc
            return _parse_choice(data, self.base_url)
        assert last_error is not None
        raise last_error


def _to_openai_message(message: dict[str, Any]) -> dict[str, Any]:
    role = message.get("role", "user")
    converted: dict[str, Any] = {"role": role, "content": message.get("content", "")}
    if role == "tool" and message.get("tool_call_id"):
        converted["tool_call_id"] = message["tool_call_id"]
    if role == "assistant" and message.get("tool_calls"):
        converted["tool_calls"] = [
            {
                "id": call.get("id"),
                "type": "function",
                "function": {
                    "name": call.get("name"),
                    "arguments": json.dumps(call.get("arguments", {})),
                },
            }
            for call in message["tool_calls"]
        ]
    return converted


def _parse_choice(data: Any, base_url: str) -> ModelResponse:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise BackendResponseError("Invalid response: no choices in completion", base_url)
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        raise BackendResponseError("Invalid response: choice has no message", base_url)
    content = message.get("content")
    calls: list[ToolCall] = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") if isinstance(raw, dict) else None
        name = function.get("name") if isinstance(function, dict) else None
        if not isinstance(name, str) or not name:
            continue
        arguments = _decode_arguments(function.get("arguments"))
        call_id = raw.get("id")
        calls.append(ToolCall(id=call_id if isinstance(call_id, str) else None, name=name, arguments=arguments))
    return ModelResponse(content=content if isinstance(content, str) else "", tool_calls=calls)


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        try:
            decoded = repair_json(raw)
        except JsonRepairError:
            logger.warning("Discarding undecodable tool arguments: %s", raw[:200])
            return {}
    return decoded if isinstance(decoded, dict) else {}
