"""Code inspection tools: pattern search, structure, usages and syntax."""

from __future__ import annotations

import ast
import json
import re
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from codeloop.safety.sandbox import run_shell
from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.builtins.files import WorkspaceTool, iter_workspace_files
from codeloop.tools.workspace import Workspace

SOURCE_SUFFIXES = (".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rs", ".java", ".rb", ".php", ".cs")
LANGUAGE_SUFFIXES = {
    "python": (".py",),
    "javascript": (".js", ".jsx", ".mjs"),
    "typescript": (".ts", ".tsx"),
    "go": (".go",),
    "rust": (".rs",),
    "java": (".java",),
}
_MAX_SCANNED_FILES = 200
_MAX_REPORTED_MATCHES = 20

_JS_IMPORT_RE = re.compile(r"^\s*(?:import|export)\b.*$|^.*\brequire\(.*$", re.MULTILINE)
_JS_FUNCTION_RE = re.compile(
    r"(?:async\s+)?function\s+(\w+)|(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>"
)
_JS_CLASS_RE = re.compile(r"\bclass\s+(\w+)")
_JS_DEPENDENCY_RE = re.compile(r"(?:import\s+(?:[^'\"]*?\s+from\s+)?|require\()\s*['\"]([^'\"]+)['\"]")


class FindCodePatternInput(BaseModel):
    pattern: str = Field(description="Regular expression")
    file_path: str | None = None
    language: str | None = None


class FindCodePatternTool(WorkspaceTool):
    name = "find_code_pattern"
    description = "Search one file, or source files of a language, for a regular expression."
    input_schema = FindCodePatternInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = FindCodePatternInput.model_validate(data)
        try:
            regex = re.compile(payload.pattern, re.MULTILINE)
        except re.error as exc:
            return ToolResult.fail(f"Invalid pattern: {exc}")
        if payload.file_path:
            files = [self.workspace.resolve(payload.file_path)]
        else:
            suffixes = LANGUAGE_SUFFIXES.get((payload.language or "").lower(), SOURCE_SUFFIXES)
            files = iter_workspace_files(self.workspace.root, suffixes)[:_MAX_SCANNED_FILES]
        matches: list[str] = []
        for path in files:
            text = path.read_text(encoding="utf-8", errors="replace")
            for match in regex.finditer(text):
                line = text.count("\n", 0, match.start()) + 1
                matches.append(f"{self.workspace.relative(path)}:{line}: {match.group(0)[:160]}")
        shown = "\n".join(matches[:_MAX_REPORTED_MATCHES])
        return ToolResult.ok(f"Found {len(matches)} match(es):\n{shown}")


class ExtractFunctionInput(BaseModel):
    file_path: str
    function_name: str


class ExtractFunctionTool(WorkspaceTool):
    name = "extract_function"
    description = "Return the source of a function or method by name."
    input_schema = ExtractFunctionInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ExtractFunctionInput.model_validate(data)
        path, text = self._read(payload.file_path)
        source = None
        if path.suffix == ".py":
            source = _python_function_source(text, payload.function_name)
        else:
            source = _brace_function_source(text, payload.function_name)
        if source is None:
            return ToolResult.fail(f"Function {payload.function_name} not found in {payload.file_path}")
        return ToolResult.ok(f"Function {payload.function_name}:\n```\n{source}\n```")


def _python_function_source(text: str, name: str) -> str | None:
    try:
        tree = ast.parse(text)
    except SyntaxError:
        return None
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == name:
            return ast.get_source_segment(text, node)
    return None


def _brace_function_source(text: str, name: str) -> str | None:
    escaped = re.escape(name)
    start = re.search(
        rf"(?:function\s+{escaped}\b|(?:const|let|var)\s+{escaped}\s*=|\b{escaped}\s*[:=]\s*function|^\s*(?:async\s+)?{escaped}\s*\([^)]*\)\s*\{{)",
        text,
        re.MULTILINE,
    )
    if start is None:
        return None
    brace = text.find("{", start.end() - 1)
    if brace < 0:
        return None
    depth = 0
    for idx in range(brace, len(text)):
        if text[idx] == "{":
            depth += 1
        elif text[idx] == "}":
            depth -= 1
            if depth == 0:
                return text[start.start() : idx + 1].strip("\n")
    return None


class AnalyzeCodeStructureInput(BaseModel):
    file_path: str


class AnalyzeCodeStructureTool(WorkspaceTool):
    name = "analyze_code_structure"
    description = "List imports, functions and classes defined in a file."
    input_schema = AnalyzeCodeStructureInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = AnalyzeCodeStructureInput.model_validate(data)
        path, text = self._read(payload.file_path)
        if path.suffix == ".py":
            try:
                imports, functions, classes = _python_structure(text)
            except SyntaxError as exc:
                return ToolResult.fail(f"Cannot analyze {payload.file_path}: {exc}")
        else:
            imports = [line.strip() for line in _JS_IMPORT_RE.findall(text)]
            functions = [first or second for first, second in _JS_FUNCTION_RE.findall(text)]
            classes = _JS_CLASS_RE.findall(text)
        sections = [f"Code structure of {payload.file_path}:"]
        if imports:
            sections.append(f"Imports ({len(imports)}):")
            sections.extend(f"  {item}" for item in imports[:10])
        if functions:
            sections.append(f"Functions ({len(functions)}):")
            sections.extend(f"  - {item}" for item in functions)
        if classes:
            sections.append(f"Classes ({len(classes)}):")
            sections.extend(f"  - {item}" for item in classes)
        return ToolResult.ok("\n".join(sections))


def _python_structure(text: str) -> tuple[list[str], list[str], list[str]]:
    tree = ast.parse(text)
    imports: list[str] = []
    functions: list[str] = []
    classes: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            imports.append(ast.unparse(node))
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            functions.append(node.name)
        elif isinstance(node, ast.ClassDef):
            classes.append(node.name)
    return imports, functions, classes


class FindDependenciesInput(BaseModel):
    file_path: str


class FindDependenciesTool(WorkspaceTool):
    name = "find_dependencies"
    description = "List the modules a file imports."
    input_schema = FindDependenciesInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = FindDependenciesInput.model_validate(data)
        path, text = self._read(payload.file_path)
        deps: list[str] = []
        if path.suffix == ".py":
            try:
                tree = ast.parse(text)
            except SyntaxError as exc:
                return ToolResult.fail(f"Cannot parse {payload.file_path}: {exc}")
            for node in ast.walk(tree):
                if isinstance(node, ast.Import):
                    deps.extend(alias.name for alias in node.names)
                elif isinstance(node, ast.ImportFrom):
                    deps.append("." * node.level + (node.module or ""))
        else:
            deps = _JS_DEPENDENCY_RE.findall(text)
        unique = list(dict.fromkeys(deps))
        listing = "\n".join(f"  - {dep}" for dep in unique)
        return ToolResult.ok(f"Dependencies in {payload.file_path}:\n{listing}")


class FindUsagesInput(BaseModel):
    symbol: str = Field(min_length=1)
    file_path: str | None = None


class FindUsagesTool(WorkspaceTool):
    name = "find_usages"
    description = "Find whole-word occurrences of a symbol in a file or across source files."
    input_schema = FindUsagesInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = FindUsagesInput.model_validate(data)
        regex = re.compile(rf"\b{re.escape(payload.symbol)}\b")
        if payload.file_path:
            files = [self.workspace.resolve(payload.file_path)]
        else:
            files = iter_workspace_files(self.workspace.root, SOURCE_SUFFIXES)[:_MAX_SCANNED_FILES]
        usages: list[str] = []
        for path in files:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    usages.append(f"  {self.workspace.relative(path)}:{number} - {line.strip()}")
        shown = "\n".join(usages[:_MAX_REPORTED_MATCHES])
        return ToolResult.ok(f'Found {len(usages)} usage(s) of "{payload.symbol}":\n{shown}')


class GetCodeContextInput(BaseModel):
    file_path: str
    line_number: int = Field(ge=1)
    radius: int = Field(default=10, ge=0, le=200)


class GetCodeContextTool(WorkspaceTool):
    name = "get_code_context"
    description = "Show numbered lines around a line of a file."
    input_schema = GetCodeContextInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = GetCodeContextInput.model_validate(data)
        _, text = self._read(payload.file_path)
        lines = text.splitlines()
        start = max(0, payload.line_number - 1 - payload.radius)
        end = min(len(lines), payload.line_number + payload.radius)
        numbered = "\n".join(f"{start + offset + 1}: {line}" for offset, line in enumerate(lines[start:end]))
        return ToolResult.ok(f"Context around line {payload.line_number}:\n```\n{numbered}\n```")


class ValidateSyntaxInput(BaseModel):
    file_path: str
    language: str | None = None


class ValidateSyntaxTool(WorkspaceTool):
    name = "validate_syntax"
    description = "Check a file for syntax errors (Python, JSON, JavaScript when node is installed)."
    input_schema = ValidateSyntaxInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = ValidateSyntaxInput.model_validate(data)
        path, text = self._read(payload.file_path)
        language = (payload.language or _language_for(path)).lower()
        if language == "python":
            try:
                compile(text, payload.file_path, "exec")
            except SyntaxError as exc:
                return ToolResult.fail(f"Syntax error: {exc.msg} (line {exc.lineno})")
            return ToolResult.ok("Python syntax is valid")
        if language == "json":
            try:
                json.loads(text)
            except json.JSONDecodeError as exc:
                return ToolResult.fail(f"Syntax error: {exc}")
            return ToolResult.ok("JSON syntax is valid")
        if language == "javascript" and shutil.which("node"):
            result = run_shell(f'node --check "{path}"', self.workspace.root, timeout_seconds=30)
            if not result.ok:
                return ToolResult.fail(f"Syntax error: {result.stderr.strip()[:500]}")
            return ToolResult.ok("JavaScript syntax is valid")
        return ToolResult.ok(f"No syntax validator for {language}; basic check completed")


def _language_for(path: Path) -> str:
    if path.suffix == ".json":
        return "json"
    for language, suffixes in LANGUAGE_SUFFIXES.items():
        if path.suffix in suffixes:
            return language
    return path.suffix.lstrip(".") or "text"


class MakeIncrementalChangeInput(BaseModel):
    file_path: str
    change_description: str


class MakeIncrementalChangeTool(WorkspaceTool):
    name = "make_incremental_change"
    description = "Plan a small change to a file; apply it afterwards with search_replace or replace_code."
    input_schema = MakeIncrementalChangeInput
    read_only = True

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = MakeIncrementalChangeInput.model_validate(data)
        _, text = self._read(payload.file_path)
        return ToolResult.ok(
            f"Incremental change planned for {payload.file_path} ({len(text.splitlines())} lines): "
            f"{payload.change_description}\nUse search_replace or replace_code to apply it."
        )


def code_tools(workspace: Workspace) -> list[Tool]:
    return [
        FindCodePatternTool(workspace),
        ExtractFunctionTool(workspace),
        AnalyzeCodeStructureTool(workspace),
        FindDependenciesTool(workspace),
        FindUsagesTool(workspace),
        GetCodeContextTool(workspace),
        ValidateSyntaxTool(workspace),
        MakeIncrementalChangeTool(workspace),
    ]
