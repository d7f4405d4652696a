"""Detection of repeating, oscillating and stalled action sequences."""

from __future__ import annotations

import json
import re
from collections import deque
from dataclasses import dataclass
from hashlib import sha256

from codeloop.models.base import ToolCall

READ_ONLY_TOOLS = {
    "read_file",
    "read_file_lines",
    "list_files",
    "search_files",
    "get_file_info",
    "find_code_pattern",
    "extract_function",
    "analyze_code_structure",
    "find_dependencies",
    "find_usages",
    "get_code_context",
    "git_status",
    "git_diff",
    "review_changes",
}
MUTATING_TOOLS = {
    "write_file",
    "search_replace",
    "apply_patch",
    "insert_code",
    "replace_code",
    "create_test",
    "apply_changes_batch",
    "format_code",
}
KEY_PREFIX_CHARS = 100

_VOLATILE_PATTERNS = [
    (re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"), "UUID"),
    (
        re.compile(
            r"\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?"
        ),
        "DATE",
    ),
    (re.compile(r"\b\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?\b"), "TIME"),
    (re.compile(r"\b\d{10,13}\b"), "TS"),
    (re.compile(r"\b[0-9a-f]{16,}\b"), "HEX"),
]


def normalize_arguments(text: str) -> str:
    """Replace timestamps, ids and similar tokens that differ between retries."""
    for pattern, token in _VOLATILE_PATTERNS:
        text = pattern.sub(token, text)
    return text


def action_key(call: ToolCall) -> str:
    """Tool name plus a bounded, normalised argument signature."""
    signature = normalize_arguments(json.dumps(call.arguments, sort_keys=True, default=str))
    if len(signature) <= KEY_PREFIX_CHARS:
        return f"{call.name}:{signature}"
    digest = sha256(signature.encode("utf-8")).hexdigest()[:8]
    return f"{call.name}:{signature[:KEY_PREFIX_CHARS]}#{digest}"


@dataclass(frozen=True)
class RecordedAction:
    key: str
    read_only: bool
    mutating: bool


class LoopDetector:
    """Keeps the last few actions of one run and flags unproductive patterns.

    Three patterns are reported: the same action ``repeat_threshold`` times in
    a row, a period-2 oscillation ``A, B, A, B``, and a stall where the tail
    of the window is only read-only calls, at least one of them repeated,
    while nothing has been modified.
    """

    def __init__(self, window: int = 10, repeat_threshold: int = 4, stall_threshold: int = 6) -> None:
        self.window = max(window, 4)
        self.repeat_threshold = max(repeat_threshold, 2)
        self.stall_threshold = max(stall_threshold, 2)
        self._actions: deque[RecordedAction] = deque(maxlen=self.window)
        self.reason: str | None = None

    def record(self, call: ToolCall, read_only: bool | None = None, mutating: bool | None = None) -> str:
        key = action_key(call)
        self._actions.append(
            RecordedAction(
                key=key,
                read_only=call.name in READ_ONLY_TOOLS if read_only is None else read_only,
                mutating=call.name in MUTATING_TOOLS if mutating is None else mutating,
            )
        )
        return key

    @property
    def keys(self) -> list[str]:
        return [action.key for action in self._actions]

    def reset(self) -> None:
        self._actions.clear()
        self.reason = None

    def detect(self, files_modified: int = 0) -> bool:
        self.reason = None
        keys = self.keys
        tail = keys[-self.repeat_threshold :]
        if len(tail) == self.repeat_threshold and len(set(tail)) == 1:
            self.reason = f"same action repeated {self.repeat_threshold} times: {tail[0][:80]}"
            return True
        if len(keys) >= 4:
            a, b, c, d = keys[-4:]
            if a == c and b == d and a != b:
                self.reason = "oscillating between two actions"
                return True
        if files_modified == 0 and self._is_stalled():
            self.reason = "only read-only actions without modifying anything"
            return True
        return False

    def _is_stalled(self) -> bool:
        actions = list(self._actions)
        if any(action.mutating for action in actions):
            return False
        tail = actions[-self.stall_threshold :]
        if len(tail) < self.stall_threshold:
            return False
        if not all(action.read_only for action in tail):
            return False
        return len({action.key for action in tail}) < len(tail)
