"""Failure taxonomy and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class FailureTag(str, Enum):
    """Standardized failure categories recorded on a run."""

    PARSE_ERROR = "PARSE_ERROR"
    TOOL_ERROR = "TOOL_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    LOOP_DETECTED = "LOOP_DETECTED"
    COMPACTION_FALLBACK = "COMPACTION_FALLBACK"
    ITERATION_CAP = "ITERATION_CAP"
    TIMEOUT = "TIMEOUT"
    CONSECUTIVE_FAILURES = "CONSECUTIVE_FAILURES"


@dataclass(frozen=True)
class FailureEvent:
    """Structured failure event for traces and reports."""

    tag: FailureTag
    reason: str
    details: dict[str, Any] | None = None


class WorkspaceEscapeError(ValueError):
    """Raised when a tool path resolves outside the workspace root."""


class SubagentNameConflictError(ValueError):
    """Raised when a descriptor tries to take a reserved or duplicate name."""


class SubagentConfigError(ValueError):
    """Raised when subagent descriptors cannot be loaded."""
