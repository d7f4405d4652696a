"""Side-channel storage for tool output evicted from the conversation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

CACHE_DIR_NAME = ".codeloop_cache"
RETRIEVAL_TOOL_NAME = "read_stored_result"


@dataclass
class ScratchEntry:
    tool_name: str
    handle: str
    path: Path
    relative_path: str
    size: int


@dataclass
class ScratchStore:
    """Writes large results to ``<workspace>/.codeloop_cache`` so tools can read them back."""

    workspace_dir: Path
    cache_dir_name: str = CACHE_DIR_NAME
    entries: dict[str, ScratchEntry] = field(default_factory=dict)

    @property
    def cache_dir(self) -> Path:
        return Path(self.workspace_dir) / self.cache_dir_name

    def save(self, tool_name: str, content: str) -> ScratchEntry:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        handle = f"tool_result_{int(time.time() * 1000)}_{uuid4().hex[:8]}"
        path = self.cache_dir / f"{handle}.txt"
        path.write_text(content, encoding="utf-8")
        entry = ScratchEntry(
            tool_name=tool_name,
            handle=handle,
            path=path,
            relative_path=f"{self.cache_dir_name}/{path.name}",
            size=len(content),
        )
        self.entries[handle] = entry
        return entry

    def load(self, handle_or_path: str) -> str:
        """Return stored content by handle or by the path shown in the pointer."""
        entry = self.entries.get(handle_or_path)
        if entry is not None:
            return entry.path.read_text(encoding="utf-8")
        candidate = Path(handle_or_path)
        if not candidate.is_absolute():
            candidate = Path(self.workspace_dir) / candidate
        resolved = candidate.resolve()
        if not resolved.is_relative_to(self.cache_dir.resolve()):
            raise KeyError(f"Unknown scratch entry: {handle_or_path}")
        return resolved.read_text(encoding="utf-8")
