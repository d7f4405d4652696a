"""File tools restricted to the workspace."""

from __future__ import annotations

import difflib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.workspace import Workspace

IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".codeloop_cache"}
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class WorkspaceTool(Tool):
    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    def _read(self, file_path: str) -> tuple[Path, str]:
        target = self.workspace.resolve(file_path)
        return target, target.read_text(encoding="utf-8")


def iter_workspace_files(root: Path, suffixes: tuple[str, ...] = ()) -> list[Path]:
    """Files under ``root`` skipping vendored and cache directories."""
    found: list[Path] = []
    for path in sorted(root.rglob("*")):
        if any(part in IGNORED_DIRS for part in path.relative_to(root).parts):
            continue
        if not path.is_file():
            continue
        if suffixes and path.suffix not in suffixes:
            continue
        found.append(path)
    return found


def write_text(target: Path, content: str) -> str:
    """Write ``content`` and return a short diff against the previous text."""
    existing = target.read_text(encoding="utf-8") if target.is_file() else ""
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    if not existing or existing == content:
        return ""
    diff = difflib.unified_diff(
        existing.splitlines(), content.splitlines(), "before", "after", lineterm="", n=1
    )
    return "\n".join(list(diff)[:60])


class ReadFileInput(BaseModel):
    file_path: str = Field(description="Path relative to the workspace root")


class ReadFileTool(WorkspaceTool):
    name = "read_file"
    description = "Read the full contents of a file."
    input_schema = ReadFileInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ReadFileInput.model_validate(data)
        target = self.workspace.resolve(payload.file_path)
        if not target.is_file():
            return ToolResult.fail(f"Failed to read file: {payload.file_path} does not exist")
        content = target.read_text(encoding="utf-8", errors="replace")
        return ToolResult.ok(f"File content of {payload.file_path}:\n```\n{content}\n```")


class WriteFileInput(BaseModel):
    file_path: str
    content: str


class WriteFileTool(WorkspaceTool):
    name = "write_file"
    description = "Create or overwrite a file with the given content. Parent directories are created."
    input_schema = WriteFileInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = WriteFileInput.model_validate(data)
        target = self.workspace.resolve(payload.file_path)
        if target.is_dir():
            return ToolResult.fail(f"Failed to write file: {payload.file_path} is a directory")
        diff = write_text(target, payload.content)
        message = f"Successfully wrote to {payload.file_path}"
        if diff:
            message = f"{message}\n\nChanges:\n{diff}"
        return ToolResult.ok(message)


class ListFilesInput(BaseModel):
    directory_path: str = "."


class ListFilesTool(WorkspaceTool):
    name = "list_files"
    description = "List files and directories in a directory, directories first."
    input_schema = ListFilesInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ListFilesInput.model_validate(data)
        target = self.workspace.resolve(payload.directory_path)
        if not target.is_dir():
            return ToolResult.fail(f"Failed to list files: {payload.directory_path} is not a directory")
        entries = sorted(target.iterdir(), key=lambda item: (not item.is_dir(), item.name))
        lines = []
        for entry in entries:
            kind = "dir " if entry.is_dir() else "file"
            lines.append(f"  [{kind}] {self.workspace.relative(entry)}")
        listing = "\n".join(lines) if lines else "  (empty)"
        return ToolResult.ok(f"Files in {payload.directory_path}:\n{listing}")

    def touched_paths(self, data: BaseModel) -> list[str]:
        return []


class SearchFilesInput(BaseModel):
    pattern: str = Field(description="Glob pattern such as **/*.py")
    directory: str | None = None


class SearchFilesTool(WorkspaceTool):
    name = "search_files"
    description = "Find files whose path matches a glob pattern."
    input_schema = SearchFilesInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = SearchFilesInput.model_validate(data)
        base = self.workspace.resolve(payload.directory)
        matches = [
            path
            for path in sorted(base.glob(payload.pattern))
            if path.is_file() and not any(part in IGNORED_DIRS for part in path.relative_to(base).parts)
        ]
        listing = "\n".join(f"  {self.workspace.relative(path)}" for path in matches[:200])
        return ToolResult.ok(f"Files matching {payload.pattern} ({len(matches)}):\n{listing}")


class GetFileInfoInput(BaseModel):
    file_path: str


class GetFileInfoTool(WorkspaceTool):
    name = "get_file_info"
    description = "Show size, modification time and type of a path."
    input_schema = GetFileInfoInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = GetFileInfoInput.model_validate(data)
        target = self.workspace.resolve(payload.file_path)
        if not target.exists():
            return ToolResult.fail(f"Failed to get file info: {payload.file_path} does not exist")
        stats = target.stat()
        modified = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat()
        kind = "directory" if target.is_dir() else "file"
        return ToolResult.ok(
            f"File info for {payload.file_path}:\n"
            f"  Size: {stats.st_size} bytes\n"
            f"  Modified: {modified}\n"
            f"  Type: {kind}"
        )


class ReadFileLinesInput(BaseModel):
    file_path: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)


class ReadFileLinesTool(WorkspaceTool):
    name = "read_file_lines"
    description = "Read an inclusive, 1-based range of lines from a file."
    input_schema = ReadFileLinesInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ReadFileLinesInput.model_validate(data)
        if payload.end_line < payload.start_line:
            return ToolResult.fail("end_line must not be before start_line")
        _, content = self._read(payload.file_path)
        lines = content.splitlines()
        selected = lines[payload.start_line - 1 : payload.end_line]
        numbered = "\n".join(
            f"{payload.start_line + offset}: {line}" for offset, line in enumerate(selected)
        )
        return ToolResult.ok(f"Lines {payload.start_line}-{payload.end_line} of {payload.file_path}:\n```\n{numbered}\n```")


class SearchReplaceInput(BaseModel):
    file_path: str
    search: str = Field(min_length=1)
    replace: str


class SearchReplaceTool(WorkspaceTool):
    name = "search_replace"
    description = "Replace every literal occurrence of a text in a file."
    input_schema = SearchReplaceInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = SearchReplaceInput.model_validate(data)
        target, content = self._read(payload.file_path)
        count = content.count(payload.search)
        if count == 0:
            return ToolResult.fail(f"No matches found for the search text in {payload.file_path}")
        target.write_text(content.replace(payload.search, payload.replace), encoding="utf-8")
        return ToolResult.ok(f"Replaced {count} occurrence(s) in {payload.file_path}")


class ApplyPatchInput(BaseModel):
    file_path: str
    patch: str = Field(description="Unified diff hunks for this file")


class ApplyPatchTool(WorkspaceTool):
    name = "apply_patch"
    description = "Apply unified-diff hunks to a file. Context lines must match."
    input_schema = ApplyPatchInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ApplyPatchInput.model_validate(data)
        target, content = self._read(payload.file_path)
        trailing_newline = content.endswith("\n")
        lines = content.splitlines()
        hunks = _parse_hunks(payload.patch)
        if not hunks:
            return ToolResult.fail("Patch contains no hunks")
        offset = 0
        for expected_start, old_block, new_block in hunks:
            position = _locate_block(lines, old_block, expected_start - 1 + offset)
            if position is None:
                return ToolResult.fail(
                    f"Patch hunk at line {expected_start} does not match {payload.file_path}"
                )
            lines[position : position + len(old_block)] = new_block
            offset += len(new_block) - len(old_block)
        text = "\n".join(lines)
        if trailing_newline or not content:
            text += "\n"
        target.write_text(text, encoding="utf-8")
        return ToolResult.ok(f"Patch applied successfully ({len(hunks)} hunk(s))")


def _parse_hunks(patch: str) -> list[tuple[int, list[str], list[str]]]:
    hunks: list[tuple[int, list[str], list[str]]] = []
    current: tuple[int, list[str], list[str]] | None = None
    for raw in patch.splitlines():
        if raw.startswith(("--- ", "+++ ")):
            continue
        header = _HUNK_RE.match(raw)
        if header:
            current = (int(header.group(1)), [], [])
            hunks.append(current)
            continue
        if current is None or raw.startswith("\\"):
            continue
        if raw.startswith("-"):
            current[1].append(raw[1:])
        elif raw.startswith("+"):
            current[2].append(raw[1:])
        else:
            line = raw[1:] if raw.startswith(" ") else raw
            current[1].append(line)
            current[2].append(line)
    return hunks


def _locate_block(lines: list[str], block: list[str], hint: int) -> int | None:
    if not block:
        return max(0, min(hint, len(lines)))
    size = len(block)
    candidates = range(len(lines) - size + 1)
    for position in sorted(candidates, key=lambda pos: abs(pos - hint)):
        if lines[position : position + size] == block:
            return position
    return None


class InsertCodeInput(BaseModel):
    file_path: str
    line_number: int = Field(ge=1, description="1-based line the code is inserted before")
    code: str


class InsertCodeTool(WorkspaceTool):
    name = "insert_code"
    description = "Insert code before the given 1-based line of a file."
    input_schema = InsertCodeInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = InsertCodeInput.model_validate(data)
        target, content = self._read(payload.file_path)
        lines = content.split("\n")
        index = min(payload.line_number - 1, len(lines))
        lines[index:index] = payload.code.split("\n")
        target.write_text("\n".join(lines), encoding="utf-8")
        return ToolResult.ok(f"Inserted code at line {payload.line_number} of {payload.file_path}")


class ReplaceCodeInput(BaseModel):
    file_path: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    new_code: str


class ReplaceCodeTool(WorkspaceTool):
    name = "replace_code"
    description = "Replace an inclusive, 1-based line range of a file with new code."
    input_schema = ReplaceCodeInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ReplaceCodeInput.model_validate(data)
        if payload.end_line < payload.start_line:
            return ToolResult.fail("end_line must not be before start_line")
        target, content = self._read(payload.file_path)
        lines = content.split("\n")
        if payload.start_line > len(lines):
            return ToolResult.fail(
                f"start_line {payload.start_line} is past the end of {payload.file_path} ({len(lines)} lines)"
            )
        lines[payload.start_line - 1 : payload.end_line] = payload.new_code.split("\n")
        target.write_text("\n".join(lines), encoding="utf-8")
        return ToolResult.ok(f"Replaced lines {payload.start_line}-{payload.end_line} of {payload.file_path}")


class CreateTestInput(BaseModel):
    file_path: str = Field(description="Source file the test covers")
    test_content: str


class CreateTestTool(WorkspaceTool):
    name = "create_test"
    description = "Write a test file next to a source file (test_x.py for Python, x.test.ext otherwise)."
    input_schema = CreateTestInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = CreateTestInput.model_validate(data)
        test_path = derive_test_path(payload.file_path)
        target = self.workspace.resolve(test_path)
        write_text(target, payload.test_content)
        return ToolResult.ok(f"Created test {test_path}")

    def touched_paths(self, data: BaseModel) -> list[str]:
        return [derive_test_path(getattr(data, "file_path"))]


def derive_test_path(file_path: str) -> str:
    path = Path(file_path)
    if path.suffix == ".py":
        if path.name.startswith("test_"):
            return path.as_posix()
        return path.with_name(f"test_{path.name}").as_posix()
    if path.suffix in {".ts", ".tsx", ".js", ".jsx"}:
        return path.with_name(f"{path.stem}.test{path.suffix}").as_posix()
    return path.with_name(f"{path.stem}_test{path.suffix}").as_posix()


class FileChange(BaseModel):
    file: str
    content: str


class ApplyChangesBatchInput(BaseModel):
    changes: list[FileChange] = Field(min_length=1)


class ApplyChangesBatchTool(WorkspaceTool):
    name = "apply_changes_batch"
    description = "Write several files in order. Earlier writes stay applied if a later one fails."
    input_schema = ApplyChangesBatchInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ApplyChangesBatchInput.model_validate(data)
        lines = []
        failed = 0
        for change in payload.changes:
            try:
                write_text(self.workspace.resolve(change.file), change.content)
                lines.append(f"{change.file}: ok")
            except (OSError, ValueError) as exc:
                failed += 1
                lines.append(f"{change.file}: failed ({exc})")
        summary = f"Applied {len(payload.changes) - failed}/{len(payload.changes)} change(s):\n" + "\n".join(lines)
        if failed:
            return ToolResult.fail(f"{failed} change(s) failed", content=summary)
        return ToolResult.ok(summary)

    def touched_paths(self, data: BaseModel) -> list[str]:
        return [change.file for change in getattr(data, "changes", [])]


def file_tools(workspace: Workspace) -> list[Tool]:
    return [
        ReadFileTool(workspace),
        WriteFileTool(workspace),
        ListFilesTool(workspace),
        SearchFilesTool(workspace),
        GetFileInfoTool(workspace),
        ReadFileLinesTool(workspace),
        SearchReplaceTool(workspace),
        ApplyPatchTool(workspace),
        InsertCodeTool(workspace),
        ReplaceCodeTool(workspace),
        CreateTestTool(workspace),
        ApplyChangesBatchTool(workspace),
    ]
