"""Heuristic and model-assisted checks of whether a task is finished."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from codeloop.models.base import BaseChatModel
from codeloop.models.errors import ModelTransportError
from codeloop.prompts import COMPLETION_VERIFICATION_PROMPT
from codeloop.state import AgentState
from codeloop.util.logging import get_logger

logger = get_logger(__name__)

MUTATING_VERBS = (
    "add",
    "remove",
    "fix",
    "create",
    "delete",
    "update",
    "write",
    "implement",
    "rename",
    "refactor",
    "change",
    "modify",
    "replace",
    "edit",
    "move",
    "insert",
    "append",
    "generate",
    "make",
    "build",
    "set up",
    "setup",
    "scaffold",
    "initialize",
    "initialise",
)
CREATION_VERBS = ("create", "set up", "setup", "scaffold", "initialize", "initialise", "build", "make", "generate", "new")
_COMPLETE_RE = re.compile(r"COMPLETE:\s*(yes|no)\b", re.IGNORECASE)
_SUMMARY_RE = re.compile(r"SUMMARY:\s*(.+)", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class ProjectMarker:
    """Files (and optionally a package.json dependency) that show a project exists."""

    keywords: tuple[str, ...]
    files: tuple[str, ...]
    npm_dependency: str | None = None


PROJECT_MARKERS: list[ProjectMarker] = [
    ProjectMarker(("fastapi", "fast api"), ("main.py", "requirements.txt")),
    ProjectMarker(("next.js", "nextjs"), ("package.json",), npm_dependency="next"),
    ProjectMarker(("react",), ("package.json",), npm_dependency="react"),
    ProjectMarker(("vue",), ("package.json",), npm_dependency="vue"),
    ProjectMarker(("express",), ("package.json",), npm_dependency="express"),
    ProjectMarker(("django",), ("manage.py",)),
    ProjectMarker(("flask",), ("app.py",)),
    ProjectMarker(("spring", "maven"), ("pom.xml",)),
    ProjectMarker(("gradle",), ("build.gradle",)),
    ProjectMarker(("rust", "cargo"), ("Cargo.toml",)),
    ProjectMarker(("golang", "go module"), ("go.mod",)),
    ProjectMarker(("laravel",), ("artisan",)),
    ProjectMarker(("rails",), ("Gemfile", "config.ru")),
]


def _has_word(text: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(word)}\b", text) for word in words)


def implies_mutation(task: str) -> bool:
    return _has_word(task.lower(), MUTATING_VERBS)


@dataclass(frozen=True)
class CompletionVerdict:
    complete: bool
    summary: str = ""
    source: str = "heuristic"


class TaskCompletionOracle:
    """Judges whether the recorded run state satisfies the task.

    ``check`` is cheap and read-only: it looks at the run state and, when a
    workspace is known, at marker files. ``verify_with_model`` asks the model
    for an explicit ``COMPLETE: yes/no`` verdict and is used before trusting
    a model that says it is done.
    """

    def __init__(self, workspace_dir: str | Path | None = None, markers: list[ProjectMarker] | None = None) -> None:
        self.workspace_dir = Path(workspace_dir) if workspace_dir is not None else None
        self.markers = PROJECT_MARKERS if markers is None else markers

    def check(self, state: AgentState) -> CompletionVerdict:
        task = state.task.lower()
        mutations = state.mutation_count
        errors = len(state.errors)
        if mutations == 0:
            markers = self.check_markers(state)
            if markers.complete:
                return markers
            if implies_mutation(task):
                return CompletionVerdict(False, "No file changes have been made yet.")
            return CompletionVerdict(False, "Nothing has been changed yet.")
        if errors:
            return CompletionVerdict(False, f"{errors} unresolved error(s): {state.errors[-1][:200]}")
        modified = ", ".join(sorted(state.files_modified))
        return CompletionVerdict(True, f"Modified {mutations} file(s): {modified}.")

    def check_markers(self, state: AgentState) -> CompletionVerdict:
        """Only the workspace marker evidence of ``check``; edit progress never counts."""
        if state.mutation_count or state.errors:
            return CompletionVerdict(False, "No project markers to rely on.")
        marker = self._satisfied_marker(state.task.lower())
        if marker is None:
            return CompletionVerdict(False, "No project markers found.")
        files = ", ".join(marker.files)
        return CompletionVerdict(True, f"The project files ({files}) are already in place.", "markers")

    def _satisfied_marker(self, task: str) -> ProjectMarker | None:
        if self.workspace_dir is None or not _has_word(task, CREATION_VERBS):
            return None
        for marker in self.markers:
            if not any(keyword in task for keyword in marker.keywords):
                continue
            for base in self._candidate_roots():
                if all((base / name).exists() for name in marker.files) and self._has_dependency(base, marker):
                    return marker
        return None

    def _candidate_roots(self) -> list[Path]:
        assert self.workspace_dir is not None
        if not self.workspace_dir.is_dir():
            return []
        roots = [self.workspace_dir]
        roots.extend(
            child
            for child in sorted(self.workspace_dir.iterdir())
            if child.is_dir() and not child.name.startswith(".") and child.name != "node_modules"
        )
        return roots

    @staticmethod
    def _has_dependency(base: Path, marker: ProjectMarker) -> bool:
        if marker.npm_dependency is None:
            return True
        try:
            package: dict[str, Any] = json.loads((base / "package.json").read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        sections = (package.get("dependencies") or {}, package.get("devDependencies") or {})
        return any(marker.npm_dependency in section for section in sections)

    def verify_with_model(
        self,
        model: BaseChatModel,
        state: AgentState,
        messages: list[dict[str, Any]],
        timeout: float | None = None,
    ) -> CompletionVerdict:
        prompt = COMPLETION_VERIFICATION_PROMPT.format(
            task=state.task,
            modified=", ".join(sorted(state.files_modified)) or "none",
            read=", ".join(sorted(state.files_read)) or "none",
            tests_run=state.tests_run,
            tests_passed=state.tests_passed,
            errors="; ".join(state.errors[-3:]) or "none",
        )
        try:
            response = model.chat([*messages, {"role": "user", "content": prompt}], None, timeout=timeout)
        except ModelTransportError as exc:
            logger.warning("Completion verification failed: %s", exc)
            return CompletionVerdict(False, "", "model")
        return parse_verification(response.content)


def parse_verification(text: str) -> CompletionVerdict:
    """Parse a ``COMPLETE:`` / ``SUMMARY:`` reply; anything unreadable means not complete."""
    match = _COMPLETE_RE.search(text or "")
    if match is None:
        return CompletionVerdict(False, "", "model")
    summary_match = _SUMMARY_RE.search(text)
    summary = summary_match.group(1).strip() if summary_match else ""
    return CompletionVerdict(match.group(1).lower() == "yes", summary, "model")
