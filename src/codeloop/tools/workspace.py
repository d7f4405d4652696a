"""Workspace root shared by every tool."""

from __future__ import annotations

from pathlib import Path

from codeloop.failures import WorkspaceEscapeError


class Workspace:
    """Resolves tool paths against a single root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str | None) -> Path:
        if not path or path in {".", "./"}:
            return self.root
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        target = candidate.resolve()
        if target != self.root and not target.is_relative_to(self.root):
            raise WorkspaceEscapeError(f"Path traversal detected: {path} is outside the workspace")
        return target

    def relative(self, target: Path) -> str:
        try:
            rel = target.resolve().relative_to(self.root)
        except ValueError:
            return str(target)
        text = rel.as_posix()
        return text or "."
