"""Shell-backed tools: commands, tests, lint and format."""

from __future__ import annotations

import re
import shlex
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from codeloop.safety.sandbox import SandboxCommandResult, run_shell
from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.builtins.files import WorkspaceTool
from codeloop.tools.workspace import Workspace

# (marker file, test, coverage, lint, format)
PROJECT_COMMANDS: list[tuple[str, str, str, str, str]] = [
    ("package.json", "npm test", "npm test -- --coverage", "npm run lint", "npm run format"),
    ("Cargo.toml", "cargo test", "cargo test", "cargo clippy", "cargo fmt"),
    ("go.mod", "go test ./...", "go test -cover ./...", "go vet ./...", "gofmt -w ."),
    ("pyproject.toml", "python -m pytest", "python -m pytest --cov", "ruff check .", "ruff format ."),
    ("setup.py", "python -m pytest", "python -m pytest --cov", "ruff check .", "ruff format ."),
]
_DEFAULT_COMMANDS = ("python -m pytest", "python -m pytest --cov", "ruff check .", "ruff format .")
_FILE_LINTERS = {
    ".py": ("ruff check {path}", "ruff format {path}"),
    ".js": ("npx eslint {path}", "npx prettier --write {path}"),
    ".jsx": ("npx eslint {path}", "npx prettier --write {path}"),
    ".ts": ("npx eslint {path}", "npx prettier --write {path}"),
    ".tsx": ("npx eslint {path}", "npx prettier --write {path}"),
    ".go": ("go vet {path}", "gofmt -w {path}"),
    ".rs": ("cargo clippy", "rustfmt {path}"),
}
_PYTEST_SUMMARY_RE = re.compile(r"(\d+) passed|(\d+) failed")
_OUTPUT_LIMIT = 20_000


def project_commands(root: Path) -> tuple[str, str, str, str]:
    for marker, test, coverage, lint, fmt in PROJECT_COMMANDS:
        if (root / marker).exists():
            return test, coverage, lint, fmt
    return _DEFAULT_COMMANDS


def format_command_output(command: str, result: SandboxCommandResult) -> str:
    output = f"Command executed: {command}\n"
    if result.stdout:
        output += f"STDOUT:\n{result.stdout[-_OUTPUT_LIMIT:]}\n"
    if result.stderr:
        output += f"STDERR:\n{result.stderr[-_OUTPUT_LIMIT:]}\n"
    return output


class ShellTool(WorkspaceTool):
    def __init__(self, workspace: Workspace, timeout_seconds: int = 120) -> None:
        super().__init__(workspace)
        self.timeout_seconds = timeout_seconds

    def execute(self, command: str, cwd: str | None) -> ToolResult:
        directory = self.workspace.resolve(cwd)
        if not directory.is_dir():
            return ToolResult.fail(f"Working directory {cwd} does not exist")
        result = run_shell(command, directory, timeout_seconds=self.timeout_seconds)
        output = format_command_output(command, result)
        if result.timed_out:
            return ToolResult.fail(f"Command timed out after {self.timeout_seconds}s: {command}", content=output)
        if result.exit_code != 0:
            detail = (result.stderr or result.stdout).strip()[-2000:]
            return ToolResult.fail(
                f"Command failed with exit code {result.exit_code}: {command}\n{detail}", content=output
            )
        return ToolResult.ok(output)

    def touched_paths(self, data: BaseModel) -> list[str]:
        return []


class RunCommandInput(BaseModel):
    command: str = Field(min_length=1)
    cwd: str | None = "."


class RunCommandTool(ShellTool):
    name = "run_command"
    description = "Run a shell command in the workspace (or a subdirectory given by cwd)."
    input_schema = RunCommandInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = RunCommandInput.model_validate(data)
        return self.execute(payload.command, payload.cwd)


class RunTestsInput(BaseModel):
    test_command: str | None = None
    cwd: str | None = None


class RunTestsTool(ShellTool):
    name = "run_tests"
    description = "Run the project's tests. The command is detected from project files unless given."
    input_schema = RunTestsInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = RunTestsInput.model_validate(data)
        root = self.workspace.resolve(payload.cwd)
        command = payload.test_command or project_commands(root)[0]
        return self.execute(command, payload.cwd)


def count_passed_tests(output: str) -> tuple[int, int]:
    """Return (passed, failed) counts parsed from a pytest-style summary."""
    passed = failed = 0
    for match in _PYTEST_SUMMARY_RE.finditer(output):
        if match.group(1):
            passed = int(match.group(1))
        if match.group(2):
            failed = int(match.group(2))
    return passed, failed


class RunTestsWithCoverageInput(BaseModel):
    cwd: str | None = None


class RunTestsWithCoverageTool(ShellTool):
    name = "run_tests_with_coverage"
    description = "Run the project's tests with coverage reporting."
    input_schema = RunTestsWithCoverageInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = RunTestsWithCoverageInput.model_validate(data)
        root = self.workspace.resolve(payload.cwd)
        return self.execute(project_commands(root)[1], payload.cwd)


class CheckTestCoverageInput(BaseModel):
    file_path: str | None = None


class CheckTestCoverageTool(ShellTool):
    name = "check_test_coverage"
    description = "Report test coverage, optionally for one file."
    input_schema = CheckTestCoverageInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = CheckTestCoverageInput.model_validate(data)
        command = project_commands(self.workspace.root)[1]
        if payload.file_path:
            self.workspace.resolve(payload.file_path)
            quoted = shlex.quote(payload.file_path)
            if command.startswith("npm"):
                command = f"{command} --collectCoverageFrom={quoted}"
            elif "pytest" in command:
                command = f"{command} --cov-report=term-missing --cov={quoted}"
        return self.execute(command, None)


class LintCodeInput(BaseModel):
    file_path: str | None = None
    cwd: str | None = None


class LintCodeTool(ShellTool):
    name = "lint_code"
    description = "Run the linter on a file or on the whole project."
    input_schema = LintCodeInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = LintCodeInput.model_validate(data)
        return self.execute(_file_command(self.workspace, payload.file_path, payload.cwd, 0), payload.cwd)


class FormatCodeInput(BaseModel):
    file_path: str | None = None
    cwd: str | None = None


class FormatCodeTool(ShellTool):
    name = "format_code"
    description = "Run the formatter on a file or on the whole project."
    input_schema = FormatCodeInput
    mutating = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = FormatCodeInput.model_validate(data)
        return self.execute(_file_command(self.workspace, payload.file_path, payload.cwd, 1), payload.cwd)

    def touched_paths(self, data: BaseModel) -> list[str]:
        path = getattr(data, "file_path", None)
        return [path] if path else []


def _file_command(workspace: Workspace, file_path: str | None, cwd: str | None, index: int) -> str:
    if file_path:
        path = workspace.resolve(file_path)
        templates = _FILE_LINTERS.get(path.suffix)
        if templates:
            return templates[index].format(path=shlex.quote(file_path))
    project = project_commands(workspace.resolve(cwd))
    return project[2 + index]


def shell_tools(workspace: Workspace, timeout_seconds: int = 120) -> list[Tool]:
    return [
        RunCommandTool(workspace, timeout_seconds),
        RunTestsTool(workspace, timeout_seconds),
        RunTestsWithCoverageTool(workspace, timeout_seconds),
        CheckTestCoverageTool(workspace, timeout_seconds),
        LintCodeTool(workspace, timeout_seconds),
        FormatCodeTool(workspace, timeout_seconds),
    ]
