"""JSON trace of a single agent run."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codeloop.failures import FailureEvent
from codeloop.models.base import ToolCall
from codeloop.util.logging import redact

TRACE_DIR_NAME = ".codeloop_traces"
_SUMMARY_CHARS = 500


@dataclass
class TraceRecorder:
    trace_id: str
    workspace_dir: str
    trace_dir_name: str = TRACE_DIR_NAME
    started_at: float = field(default_factory=time.time)
    events: list[dict[str, Any]] = field(default_factory=list)

    def record(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append({"type": event_type, "timestamp": time.time(), "payload": payload})

    def record_message(self, role: str, content: str) -> None:
        self.record("message", {"role": role, "content": redact(content)})

    def record_model_response(self, content: str, tool_calls: list[ToolCall]) -> None:
        self.record(
            "model_response",
            {
                "content": redact(content or ""),
                "tool_calls": [call.name for call in tool_calls],
            },
        )

    def record_tool_call(self, call: ToolCall) -> None:
        arguments = redact(json.dumps(call.arguments, default=str))
        self.record("tool_call", {"tool_name": call.name, "id": call.id, "arguments": arguments})

    def record_tool_result(self, tool_name: str, success: bool, content: str) -> None:
        self.record(
            "tool_result",
            {"tool_name": tool_name, "success": success, "summary": redact(content[:_SUMMARY_CHARS])},
        )

    def record_failure(self, event: FailureEvent) -> None:
        self.record("failure", {"tag": event.tag.value, "reason": event.reason, "details": event.details})

    def finalize(self, stats: dict[str, Any]) -> str:
        trace_dir = Path(self.workspace_dir) / self.trace_dir_name
        trace_dir.mkdir(parents=True, exist_ok=True)
        trace_path = trace_dir / f"{self.trace_id}.json"
        payload = {
            "trace_id": self.trace_id,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "stats": stats,
            "events": self.events,
        }
        trace_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        return str(trace_path)
