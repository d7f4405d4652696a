"""Brace-aware JSON scanning and best-effort repair."""

from __future__ import annotations

import ast
import json
import re
from typing import Any, Iterator


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class JsonRepairError(ValueError):
    """Raised when JSON repair fails."""


def scan_balanced(text: str, start: int) -> int | None:
    """Return the index just past the object or array opening at ``start``.

    Braces inside string literals and escaped quotes are ignored. ``None``
    means the value is still open, as with a reply cut off mid-stream.
    """
    if start >= len(text) or text[start] not in "{[":
        return None
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            continue
        if char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return idx + 1
    return None


def iter_json_objects(text: str) -> Iterator[tuple[int, int, dict[str, Any]]]:
    """Yield ``(start, end, value)`` for each complete top-level JSON object."""
    idx = 0
    while idx < len(text):
        start = text.find("{", idx)
        if start < 0:
            return
        end = scan_balanced(text, start)
        if end is None:
            idx = start + 1
            continue
        try:
            value = json.loads(text[start:end])
        except json.JSONDecodeError:
            idx = start + 1
            continue
        if isinstance(value, dict):
            yield start, end, value
            idx = end
        else:
            idx = start + 1


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _extract_json_block(text: str) -> str:
    for idx, char in enumerate(text):
        if char in "{[":
            end = scan_balanced(text, idx)
            if end is None:
                raise JsonRepairError("Unbalanced JSON braces")
            return text[idx:end]
    raise JsonRepairError("No JSON object or array found")


def _remove_trailing_commas(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text)


def _replace_single_quotes(text: str) -> str:
    return re.sub(r"(?<!\\)'([^'\\]*(?:\\.[^'\\]*)*)'", r'"\1"', text)


def repair_json(text: str) -> Any:
    """Parse JSON with best-effort repairs."""
    stripped = _strip_fences(text)
    block = _extract_json_block(stripped)
    cleaned = _remove_trailing_commas(block)
    for candidate in (cleaned, _remove_trailing_commas(_replace_single_quotes(cleaned))):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass
        try:
            return ast.literal_eval(candidate)
        except (ValueError, SyntaxError):
            pass
    raise JsonRepairError("Failed to repair JSON")
