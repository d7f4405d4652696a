"""Typed per-run state threaded through the agent loop."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, PrivateAttr

from codeloop.models.base import ToolCall

MAX_TRACKED_ERRORS = 10


class Phase(str, Enum):
    THINK = "think"
    ACT = "act"
    VERIFY = "verify"
    COMPLETE = "complete"


class Message(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_call_id: str | None = None
    name: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        if self.tool_calls:
            payload["tool_calls"] = [call.model_dump() for call in self.tool_calls]
        return payload


class ReasoningStep(BaseModel):
    thought: str
    action: ToolCall | None = None
    observation: str = ""
    next_phase: Phase = Phase.THINK
    success: bool | None = None


class TodoItem(BaseModel):
    task: str
    status: Literal["pending", "in_progress", "completed"] = "pending"


class AgentState(BaseModel):
    """Everything one run learns about the task and the workspace."""

    task: str
    steps: list[ReasoningStep] = Field(default_factory=list)
    files_read: set[str] = Field(default_factory=set)
    files_modified: set[str] = Field(default_factory=set)
    errors: list[str] = Field(default_factory=list)
    tests_run: int = 0
    tests_passed: int = 0
    todos: list[TodoItem] = Field(default_factory=list)

    @property
    def mutation_count(self) -> int:
        return len(self.files_modified)

    _error_keys: list[str | None] = PrivateAttr(default_factory=list)

    def record_error(self, error: str, key: str | None = None) -> None:
        """Remember an error; ``key`` names the action that produced it."""
        self.errors.append(error)
        self._error_keys.append(key)
        if len(self.errors) > MAX_TRACKED_ERRORS:
            overflow = len(self.errors) - MAX_TRACKED_ERRORS
            del self.errors[:overflow]
            del self._error_keys[:overflow]

    def clear_errors_for(self, key: str) -> None:
        """Forget errors of an action that has since succeeded with the same arguments."""
        kept = [(error, owner) for error, owner in zip(self.errors, self._error_keys) if owner != key]
        self.errors = [error for error, _ in kept]
        self._error_keys = [owner for _, owner in kept]

    def add_step(self, step: ReasoningStep) -> None:
        self.steps.append(step)

    @property
    def verified_actions(self) -> list[ReasoningStep]:
        return [step for step in self.steps if step.action is not None and step.success]
