"""Recovery of tool calls from free-form model text.

Models without native tool calling describe the calls they want in many
shapes. ``ToolCallProtocolParser.parse`` tries the recognised encodings from
most to least explicit and returns the calls of the first one that matches,
so a reply is never counted twice. The parser never raises: text it cannot
read yields an empty list.
"""

from __future__ import annotations

import json
import posixpath
import re
from typing import Any, Callable, Iterable

from codeloop.models.base import ToolCall
from codeloop.util.json_repair import JsonRepairError, iter_json_objects, repair_json, scan_balanced
from codeloop.util.logging import get_logger

logger = get_logger(__name__)

COMMAND_VERBS = (
    "npm", "yarn", "pnpm", "npx", "node", "cd", "mkdir", "git", "ls", "cat", "echo",
    "python", "python3", "pip", "pip3", "pytest", "uv", "poetry", "curl", "wget", "tar",
    "zip", "unzip", "chmod", "chown", "mv", "cp", "rm", "touch", "go", "cargo", "make",
)
_VERB_RE = "|".join(re.escape(verb) for verb in COMMAND_VERBS)
_COMMAND_LINE_RE = re.compile(rf"^(?:{_VERB_RE})(?:\s+.+)?$")
_COMMAND_WITH_ARGS_RE = re.compile(rf"^(?:{_VERB_RE})\s+\S.*$")
_SHELL_FENCE_TAGS = {"", "shell", "bash", "sh", "zsh", "console", "terminal", "text"}

_TAGGED_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)
_TAG_NAME_RE = re.compile(r"<tool_name>\s*(.*?)\s*</tool_name>", re.DOTALL)
_TAG_ARGS_RE = re.compile(r"<arguments>(.*?)(?:</arguments>|$)", re.DOTALL)
_FENCE_RE = re.compile(r"```([\w+-]*)[^\n]*\n(.*?)```", re.DOTALL)
_EXEC_CALL_RE = re.compile(r"\b(?:run_command|exec|execute)\s*\(")
_EXEC_COMMAND_RE = re.compile(rf"\b(?:{_VERB_RE})\s+[^\n]+")
_INLINE_SPAN_RE = re.compile(r"`([^`\n]+)`|(?<![\w'])'([^'\n]+)'(?![\w'])")

_QUOTED = r"""(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)')"""
_CALL_PATTERNS: list[tuple[str, re.Pattern[str], Callable[[list[str | None]], dict[str, Any]]]] = [
    (
        "run_command",
        re.compile(rf"\brun_command\s*\(\s*{_QUOTED}\s*(?:,\s*{_QUOTED}\s*)?\)", re.DOTALL),
        lambda groups: {"command": groups[0], "cwd": groups[1] or "."},
    ),
    (
        "read_file",
        re.compile(rf"\bread_file\s*\(\s*{_QUOTED}\s*\)"),
        lambda groups: {"file_path": groups[0]},
    ),
    (
        "write_file",
        re.compile(rf"\bwrite_file\s*\(\s*{_QUOTED}\s*,\s*{_QUOTED}\s*\)", re.DOTALL),
        lambda groups: {"file_path": groups[0], "content": groups[1]},
    ),
    (
        "list_files",
        re.compile(rf"\blist_files\s*\(\s*{_QUOTED}\s*\)"),
        lambda groups: {"directory_path": groups[0]},
    ),
]

_WRITE_FILE_KV_RE = re.compile(
    r"""write_file\s+(?:file_path|file|path)\s*[=:]\s*(["'])(.+?)\1\s*,?\s+(?:content|code)\s*[=:]\s*(["'])(.*?)\3""",
    re.DOTALL,
)
_CREATE_FILE_RE = re.compile(
    r"""\b(?:create|write|add)\s+(?:a\s+|the\s+)?(?:new\s+)?file\s+(?:named\s+|called\s+)?[`"']?([\w./\\-]+)[`"']?"""
    r"""\s*(?:,\s*)?(?:with\s+(?:the\s+)?(?:following\s+)?content(?:s)?|containing|:)\s*:?""",
    re.IGNORECASE,
)
_INLINE_CONTENT_RE = re.compile(r"""\s*(["'])(.*?)\1""", re.DOTALL)
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "'": "'", "\\": "\\"}


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", lambda match: _ESCAPES.get(match.group(1), match.group(0)), value)


def _quoted_values(match: re.Match[str]) -> list[str | None]:
    groups = match.groups()
    values: list[str | None] = []
    for index in range(0, len(groups), 2):
        double, single = groups[index], groups[index + 1]
        raw = double if double is not None else single
        values.append(_unescape(raw) if raw is not None else None)
    return values


def _decode_arguments(raw: str) -> dict[str, Any] | None:
    start = raw.find("{")
    if start < 0:
        return {} if not raw.strip() else None
    end = scan_balanced(raw, start)
    if end is None:
        return None
    block = raw[start:end]
    try:
        value = json.loads(block)
    except json.JSONDecodeError:
        try:
            value = repair_json(block)
        except JsonRepairError:
            return None
    return value if isinstance(value, dict) else None


def _call_from_payload(payload: dict[str, Any]) -> ToolCall | None:
    name = payload.get("name") or payload.get("tool") or payload.get("tool_name")
    arguments = payload.get("arguments")
    if arguments is None:
        arguments = payload.get("parameters", payload.get("args"))
    if isinstance(arguments, str):
        arguments = _decode_arguments(arguments)
    if not isinstance(name, str) or not name or not isinstance(arguments, dict):
        return None
    return ToolCall(name=name.strip(), arguments=arguments)


def _fences(text: str) -> list[tuple[str, str, int]]:
    return [(match.group(1).lower(), match.group(2), match.start()) for match in _FENCE_RE.finditer(text)]


def _command_lines(body: str) -> list[str]:
    lines = []
    for raw in body.splitlines():
        line = raw.strip()
        if line.startswith("$ "):
            line = line[2:].strip()
        if not line or line.startswith("#"):
            continue
        lines.append(line)
    return lines


def _run_command(command: str, cwd: str = ".") -> ToolCall:
    return ToolCall(name="run_command", arguments={"command": command, "cwd": cwd})


class ToolCallProtocolParser:
    """Parses tool calls out of model text, tier by tier."""

    def __init__(self, known_tools: Iterable[str] | None = None) -> None:
        self.known_tools = set(known_tools) if known_tools is not None else None
        self._tiers: list[tuple[str, Callable[[str], list[ToolCall]]]] = [
            ("tagged", self._parse_tagged),
            ("call_syntax", self._parse_call_syntax),
            ("fenced_line", self._parse_single_line_fences),
            ("fenced_block", self._parse_fenced_blocks),
            ("inline_span", self._parse_inline_spans),
            ("natural_language", self._parse_natural_language),
        ]
        self.last_tier: str | None = None

    def parse(self, text: str | None) -> list[ToolCall]:
        self.last_tier = None
        if not text or not text.strip():
            return []
        for tier_name, tier in self._tiers:
            try:
                calls = tier(text)
            except (ValueError, TypeError, RecursionError) as exc:
                logger.warning("Tool-call tier %s failed: %s", tier_name, exc)
                continue
            if calls:
                self.last_tier = tier_name
                logger.debug("Recovered %s tool call(s) via %s.", len(calls), tier_name)
                return calls
        return []

    def strip_tool_calls(self, text: str) -> str:
        """Remove tagged blocks and bare JSON calls, leaving the prose."""
        stripped = _TAGGED_RE.sub("", text)
        spans = [
            (start, end)
            for start, end, payload in iter_json_objects(stripped)
            if self._is_bare_call(payload)
        ]
        for start, end in reversed(spans):
            stripped = stripped[:start] + stripped[end:]
        return stripped.strip()

    def _is_known(self, name: str) -> bool:
        return self.known_tools is None or name in self.known_tools

    def _is_bare_call(self, payload: dict[str, Any]) -> bool:
        call = _call_from_payload(payload)
        return call is not None and self._is_known(call.name)

    def _parse_tagged(self, text: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for block in _TAGGED_RE.finditer(text):
            body = block.group(1)
            name_match = _TAG_NAME_RE.search(body)
            if name_match:
                args_match = _TAG_ARGS_RE.search(body)
                arguments = _decode_arguments(args_match.group(1)) if args_match else {}
                if arguments is None or not name_match.group(1):
                    logger.debug("Skipping tagged tool call with unreadable arguments.")
                    continue
                calls.append(ToolCall(name=name_match.group(1).strip(), arguments=arguments))
                continue
            payload = _decode_arguments(body)
            call = _call_from_payload(payload) if payload else None
            if call is not None:
                calls.append(call)
        if calls:
            return calls
        for _, _, payload in iter_json_objects(text):
            call = _call_from_payload(payload)
            if call is not None and self._is_known(call.name):
                calls.append(call)
        return calls

    def _parse_call_syntax(self, text: str) -> list[ToolCall]:
        found: list[tuple[int, ToolCall]] = []
        for name, pattern, extract in _CALL_PATTERNS:
            for match in pattern.finditer(text):
                arguments = extract(_quoted_values(match))
                found.append((match.start(), ToolCall(name=name, arguments=arguments)))
        found.sort(key=lambda item: item[0])
        return [call for _, call in found]

    def _parse_single_line_fences(self, text: str) -> list[ToolCall]:
        candidates = [(tag, body) for tag, body, _ in _fences(text) if tag in _SHELL_FENCE_TAGS]
        calls: list[ToolCall] = []
        for _, body in candidates:
            if _EXEC_CALL_RE.search(body):
                match = _EXEC_COMMAND_RE.search(body)
                if match is None:
                    continue
                command = match.group(0).strip().rstrip(")\"'; ").strip()
                calls.append(_run_command(command))
                continue
            lines = _command_lines(body)
            if len(lines) != 1:
                return []
            if _COMMAND_LINE_RE.match(lines[0]):
                calls.append(_run_command(lines[0]))
        return calls

    def _parse_fenced_blocks(self, text: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for tag, body, _ in _fences(text):
            if tag not in _SHELL_FENCE_TAGS:
                continue
            cwd = "."
            for line in _command_lines(body):
                for part in (piece.strip() for piece in line.split("&&")):
                    if not _COMMAND_LINE_RE.match(part):
                        continue
                    if part == "cd" or part.startswith("cd "):
                        target = part[2:].strip().strip("\"'") or "."
                        cwd = posixpath.normpath(posixpath.join(cwd, target))
                        continue
                    calls.append(_run_command(part, cwd))
        return calls

    def _parse_inline_spans(self, text: str) -> list[ToolCall]:
        prose = _FENCE_RE.sub("", text)
        calls: list[ToolCall] = []
        for match in _INLINE_SPAN_RE.finditer(prose):
            span = (match.group(1) or match.group(2) or "").strip()
            if _COMMAND_WITH_ARGS_RE.match(span):
                calls.append(_run_command(span))
        return calls

    def _parse_natural_language(self, text: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for match in _WRITE_FILE_KV_RE.finditer(text):
            calls.append(
                ToolCall(
                    name="write_file",
                    arguments={"file_path": match.group(2), "content": _unescape(match.group(4))},
                )
            )
        if calls:
            return calls
        matches = list(_CREATE_FILE_RE.finditer(text))
        for index, match in enumerate(matches):
            file_path = match.group(1).rstrip(".,:;")
            if "." not in file_path and "/" not in file_path:
                continue
            limit = matches[index + 1].start() if index + 1 < len(matches) else len(text)
            tail = text[match.end() : limit]
            content = self._following_content(tail)
            if content is None:
                continue
            calls.append(ToolCall(name="write_file", arguments={"file_path": file_path, "content": content}))
        return calls

    def _following_content(self, tail: str) -> str | None:
        inline = _INLINE_CONTENT_RE.match(tail)
        fence = _FENCE_RE.search(tail)
        if inline and (fence is None or inline.start() < fence.start()) and "\n" not in inline.group(2):
            return _unescape(inline.group(2))
        if fence is not None:
            body = fence.group(2)
            return body[:-1] if body.endswith("\n") else body
        return None
