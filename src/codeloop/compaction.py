"""Bounding conversation size by summarisation and large-result eviction."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from codeloop.memory import RETRIEVAL_TOOL_NAME, ScratchEntry, ScratchStore
from codeloop.state import Message
from codeloop.util.logging import get_logger

logger = get_logger(__name__)

SUMMARY_HEADER = "[Previous conversation summarized: {count} messages compressed]"
TRUNCATION_MARKER = "[Earlier conversation truncated: {count} messages dropped]"
TRUNCATED_HEAD_MARKER = "[TRUNCATED_HEAD]"
TRUNCATED_TAIL_MARKER = "[TRUNCATED_TAIL]"
MAX_SUMMARY_ACTIONS = 10
MAX_SUMMARY_FILES = 20
_PATH_ARGUMENTS = ("file_path", "directory_path", "path", "file")
_ERROR_MARKERS = ("Traceback", "Exception", "Error:", "AssertionError", "KeyError", "ValueError", "TypeError")


@dataclass
class CompactionOutcome:
    messages: list[Message]
    compacted: bool = False
    collapsed: int = 0
    fallback: bool = False


@dataclass
class EvictionOutcome:
    content: str
    entry: ScratchEntry | None = None
    fallback: bool = False

    @property
    def evicted(self) -> bool:
        return self.entry is not None


@dataclass
class _Digest:
    request: str | None = None
    actions: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0


class ContextCompactor:
    """Summarises old history and moves oversized tool output out of it.

    Both mechanisms are lossy. The most recent ``keep_recent`` messages are
    never collapsed, and a failing summary falls back to plain truncation so a
    run is never lost to compaction.
    """

    def __init__(
        self,
        store: ScratchStore | None = None,
        threshold: int = 50,
        keep_recent: int = 6,
        eviction_threshold: int = 50_000,
        preview_chars: int = 1_000,
        max_message_chars: int = 20_000,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.keep_recent = max(1, keep_recent)
        self.eviction_threshold = eviction_threshold
        self.preview_chars = preview_chars
        self.max_message_chars = max_message_chars

    def needs_compaction(self, messages: list[Message]) -> bool:
        return len(messages) > self.threshold

    def compact(self, messages: list[Message]) -> CompactionOutcome:
        if not self.needs_compaction(messages) or len(messages) <= self.keep_recent:
            return CompactionOutcome(messages=list(messages))
        older = messages[: -self.keep_recent]
        recent = list(messages[-self.keep_recent :])
        try:
            summary = self.summarize(older)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Summarisation failed, truncating history instead: %s", exc)
            marker = Message(role="system", content=TRUNCATION_MARKER.format(count=len(older)))
            return CompactionOutcome(
                messages=[marker, *recent], compacted=True, collapsed=len(older), fallback=True
            )
        logger.info("Compacted %s messages into a summary (kept %s).", len(older), len(recent))
        return CompactionOutcome(
            messages=[Message(role="system", content=summary), *recent],
            compacted=True,
            collapsed=len(older),
        )

    def summarize(self, messages: list[Message]) -> str:
        """Build the synthetic summary text for ``messages``."""
        digest = _Digest()
        for message in messages:
            if message.role == "system" and message.content.startswith("[Previous conversation summarized"):
                _merge_previous_summary(digest, message.content)
                continue
            if message.role == "user" and digest.request is None:
                digest.request = message.content.strip()[:500]
            for call in message.tool_calls:
                digest.actions.append(f"Tool: {call.name}({_short_arguments(call.arguments)})")
                for key in _PATH_ARGUMENTS:
                    value = call.arguments.get(key)
                    if isinstance(value, str) and value not in digest.files:
                        digest.files.append(value)
            if message.role == "tool":
                if message.content.startswith("Error:"):
                    digest.failed += 1
                else:
                    digest.succeeded += 1

        lines = [SUMMARY_HEADER.format(count=len(messages)), ""]
        if digest.request:
            lines.append(f"Original request: {digest.request}")
        lines.append("Key actions from earlier conversation:")
        actions = digest.actions[-MAX_SUMMARY_ACTIONS:]
        if actions:
            lines.extend(f"- {action}" for action in actions)
        else:
            lines.append("- (no tool calls)")
        if digest.files:
            lines.append("Files touched: " + ", ".join(digest.files[-MAX_SUMMARY_FILES:]))
        lines.append(f"Outcomes: {digest.succeeded} tool call(s) succeeded, {digest.failed} failed")
        return "\n".join(lines)

    def evict(self, tool_name: str, content: str) -> EvictionOutcome:
        """Replace an oversized tool result with a pointer into the scratch store.

        Slices read back from the store are never evicted again.
        """
        if len(content) <= self.eviction_threshold or tool_name == RETRIEVAL_TOOL_NAME:
            return EvictionOutcome(content=content)
        if self.store is not None:
            try:
                entry = self.store.save(tool_name, content)
            except OSError as exc:
                logger.warning("Could not persist large %s result: %s", tool_name, exc)
            else:
                logger.info("Evicted %s chars of %s output to %s.", len(content), tool_name, entry.relative_path)
                return EvictionOutcome(content=self.pointer(entry, content), entry=entry)
        clipped = content[: self.eviction_threshold] + f"\n{TRUNCATED_TAIL_MARKER} ({len(content)} characters total)"
        return EvictionOutcome(content=clipped, fallback=True)

    def pointer(self, entry: ScratchEntry, content: str) -> str:
        preview = content[: self.preview_chars]
        return (
            f"[Large result evicted to file: {entry.relative_path}]\n\n"
            f"Result preview (first {self.preview_chars} chars):\n{preview}\n\n"
            f"... ({entry.size} characters total)\n"
            f'To read the full result in slices, use: {RETRIEVAL_TOOL_NAME}("{entry.relative_path}", offset=0)'
        )

    def clip(self, content: str) -> str:
        """Trim one over-long message, keeping the tail of error output."""
        max_chars = self.max_message_chars
        if len(content) <= max_chars:
            return content
        keep_tail = any(marker in content for marker in _ERROR_MARKERS)
        marker = TRUNCATED_HEAD_MARKER if keep_tail else TRUNCATED_TAIL_MARKER
        if max_chars <= len(marker):
            return marker[:max_chars]
        keep_len = max_chars - len(marker)
        if keep_tail:
            return f"{marker}{content[-keep_len:]}"
        return f"{content[:keep_len]}{marker}"


def _short_arguments(arguments: dict[str, Any]) -> str:
    text = json.dumps(arguments, ensure_ascii=False, default=str)
    return text if len(text) <= 100 else f"{text[:100]}..."


def _merge_previous_summary(digest: _Digest, content: str) -> None:
    for line in content.splitlines():
        if line.startswith("Original request: ") and digest.request is None:
            digest.request = line[len("Original request: ") :]
        elif line.startswith("- Tool: "):
            digest.actions.append(line[2:])
        elif line.startswith("Files touched: "):
            for path in line[len("Files touched: ") :].split(", "):
                if path and path not in digest.files:
                    digest.files.append(path)
