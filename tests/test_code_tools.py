from __future__ import annotations

from codeloop.tools.builtins.code import (
    ExtractFunctionTool,
    FindCodePatternTool,
    FindDependenciesTool,
    FindUsagesTool,
    GetCodeContextTool,
    ValidateSyntaxTool,
)
from codeloop.tools.workspace import Workspace

SOURCE = "import os\nfrom .util import helper\n\n\ndef load(path):\n    return helper(os.path.join(path, 'x'))\n"


def _workspace(tmp_path) -> Workspace:
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "app.py").write_text(SOURCE, encoding="utf-8")
    (tmp_path / "web.js").write_text(
        "const fs = require('fs');\nimport React from 'react';\nfunction render(x) {\n  if (x) { return 1; }\n  return 0;\n}\n",
        encoding="utf-8",
    )
    return Workspace(tmp_path)


def test_find_code_pattern_reports_locations(tmp_path):
    result = FindCodePatternTool(_workspace(tmp_path)).run({"pattern": r"def \w+", "language": "python"})
    assert result.content.splitlines() == ["Found 1 match(es):", "pkg/app.py:5: def load"]


def test_invalid_pattern_is_a_failed_result(tmp_path):
    result = FindCodePatternTool(_workspace(tmp_path)).run({"pattern": "("})
    assert result.success is False
    assert result.error.startswith("Invalid pattern")


def test_extract_function_python_and_js(tmp_path):
    workspace = _workspace(tmp_path)
    tool = ExtractFunctionTool(workspace)
    python = tool.run({"file_path": "pkg/app.py", "function_name": "load"})
    assert "def load(path):\n    return helper" in python.content
    js = tool.run({"file_path": "web.js", "function_name": "render"})
    assert js.content.rstrip("`\n").endswith("return 0;\n}")
    assert tool.run({"file_path": "pkg/app.py", "function_name": "missing"}).success is False


def test_find_dependencies(tmp_path):
    workspace = _workspace(tmp_path)
    python = FindDependenciesTool(workspace).run({"file_path": "pkg/app.py"})
    assert "  - os" in python.content
    assert "  - .util" in python.content
    js = FindDependenciesTool(workspace).run({"file_path": "web.js"})
    assert "  - fs" in js.content
    assert "  - react" in js.content


def test_find_usages_counts_whole_words(tmp_path):
    result = FindUsagesTool(_workspace(tmp_path)).run({"symbol": "helper"})
    assert result.content.startswith('Found 2 usage(s) of "helper"')


def test_get_code_context(tmp_path):
    result = GetCodeContextTool(_workspace(tmp_path)).run({"file_path": "pkg/app.py", "line_number": 5, "radius": 1})
    assert "4: \n5: def load(path):\n6:     return helper" in result.content


def test_validate_syntax(tmp_path):
    workspace = _workspace(tmp_path)
    assert ValidateSyntaxTool(workspace).run({"file_path": "pkg/app.py"}).success is True
    (tmp_path / "broken.py").write_text("def f(:\n", encoding="utf-8")
    broken = ValidateSyntaxTool(workspace).run({"file_path": "broken.py"})
    assert broken.success is False
    assert broken.error.startswith("Syntax error")
    (tmp_path / "data.json").write_text("{", encoding="utf-8")
    assert ValidateSyntaxTool(workspace).run({"file_path": "data.json"}).success is False
