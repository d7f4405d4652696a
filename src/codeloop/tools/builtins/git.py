"""Git tools."""

from __future__ import annotations

import re
import shlex
from typing import Any

from pydantic import BaseModel, Field, field_validator

from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.builtins.shell import ShellTool
from codeloop.tools.workspace import Workspace

_BRANCH_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


class GitStatusInput(BaseModel):
    cwd: str | None = None


class GitStatusTool(ShellTool):
    name = "git_status"
    description = "Show the working tree status."
    input_schema = GitStatusInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = GitStatusInput.model_validate(data)
        return self.execute("git status", payload.cwd)


class GitDiffInput(BaseModel):
    file_path: str | None = None
    cwd: str | None = None


class GitDiffTool(ShellTool):
    name = "git_diff"
    description = "Show unstaged changes, optionally for one file."
    input_schema = GitDiffInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = GitDiffInput.model_validate(data)
        command = "git diff"
        if payload.file_path:
            self.workspace.resolve(payload.file_path)
            command = f"git diff -- {shlex.quote(payload.file_path)}"
        return self.execute(command, payload.cwd)


class ReviewChangesInput(BaseModel):
    cwd: str | None = None


class ReviewChangesTool(ShellTool):
    name = "review_changes"
    description = "Review every uncommitted change (status plus diff)."
    input_schema = ReviewChangesInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ReviewChangesInput.model_validate(data)
        return self.execute("git status --short && git diff", payload.cwd)


class GitCommitInput(BaseModel):
    message: str = Field(min_length=1)
    files: list[str] | None = None
    cwd: str | None = None


class GitCommitTool(ShellTool):
    name = "git_commit"
    description = "Stage the given files (or everything) and commit."
    input_schema = GitCommitInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = GitCommitInput.model_validate(data)
        for path in payload.files or []:
            self.workspace.resolve(path)
        targets = " ".join(shlex.quote(path) for path in payload.files) if payload.files else "."
        command = f"git add {targets} && git commit -m {shlex.quote(payload.message)}"
        return self.execute(command, payload.cwd)


class GitCreateBranchInput(BaseModel):
    branch_name: str
    cwd: str | None = None

    @field_validator("branch_name")
    @classmethod
    def _valid_branch(cls, value: str) -> str:
        if not _BRANCH_RE.match(value) or value.startswith("-"):
            raise ValueError("branch_name may only contain letters, digits, '.', '_', '-' and '/'")
        return value


class GitCreateBranchTool(ShellTool):
    name = "git_create_branch"
    description = "Create and switch to a new branch."
    input_schema = GitCreateBranchInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = GitCreateBranchInput.model_validate(data)
        return self.execute(f"git checkout -b {payload.branch_name}", payload.cwd)


def git_tools(workspace: Workspace, timeout_seconds: int = 120) -> list[Tool]:
    return [
        GitStatusTool(workspace, timeout_seconds),
        GitDiffTool(workspace, timeout_seconds),
        ReviewChangesTool(workspace, timeout_seconds),
        GitCommitTool(workspace, timeout_seconds),
        GitCreateBranchTool(workspace, timeout_seconds),
    ]
