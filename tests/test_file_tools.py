from __future__ import annotations

from codeloop.tools.builtins.files import (
    ApplyChangesBatchTool,
    ApplyPatchTool,
    InsertCodeTool,
    ListFilesTool,
    ReadFileLinesTool,
    ReplaceCodeTool,
    SearchReplaceTool,
    WriteFileTool,
    derive_test_path,
)
from codeloop.tools.workspace import Workspace


def test_write_file_creates_parents_and_reports_diff(tmp_path):
    tool = WriteFileTool(Workspace(tmp_path))
    first = tool.run({"file_path": "pkg/app.py", "content": "a = 1\n"})
    assert first.success is True
    assert first.content == "Successfully wrote to pkg/app.py"
    second = tool.run({"file_path": "pkg/app.py", "content": "a = 2\n"})
    assert "-a = 1" in second.content
    assert "+a = 2" in second.content


def test_list_files_puts_directories_first(tmp_path):
    (tmp_path / "b.txt").write_text("", encoding="utf-8")
    (tmp_path / "src").mkdir()
    result = ListFilesTool(Workspace(tmp_path)).run({})
    assert result.content.splitlines() == ["Files in .:", "  [dir ] src", "  [file] b.txt"]


def test_search_replace(tmp_path):
    (tmp_path / "app.py").write_text("x = 1\ny = x\n", encoding="utf-8")
    tool = SearchReplaceTool(Workspace(tmp_path))
    result = tool.run({"file_path": "app.py", "search": "x", "replace": "count"})
    assert result.content == "Replaced 2 occurrence(s) in app.py"
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "count = 1\ny = count\n"
    missing = tool.run({"file_path": "app.py", "search": "zzz", "replace": "q"})
    assert missing.success is False
    assert missing.error == "No matches found for the search text in app.py"


def test_apply_patch(tmp_path):
    (tmp_path / "app.py").write_text("def f():\n    return 1\n", encoding="utf-8")
    patch = "--- a/app.py\n+++ b/app.py\n@@ -1,2 +1,2 @@\n def f():\n-    return 1\n+    return 2\n"
    result = ApplyPatchTool(Workspace(tmp_path)).run({"file_path": "app.py", "patch": patch})
    assert result.success is True
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "def f():\n    return 2\n"


def test_apply_patch_with_stale_context_fails(tmp_path):
    (tmp_path / "app.py").write_text("def g():\n    return 1\n", encoding="utf-8")
    patch = "@@ -1,2 +1,2 @@\n def f():\n-    return 1\n+    return 2\n"
    result = ApplyPatchTool(Workspace(tmp_path)).run({"file_path": "app.py", "patch": patch})
    assert result.success is False
    assert "does not match app.py" in result.error


def test_insert_and_replace_code(tmp_path):
    (tmp_path / "app.py").write_text("a\nb\nc", encoding="utf-8")
    workspace = Workspace(tmp_path)
    InsertCodeTool(workspace).run({"file_path": "app.py", "line_number": 2, "code": "inserted"})
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "a\ninserted\nb\nc"
    ReplaceCodeTool(workspace).run({"file_path": "app.py", "start_line": 2, "end_line": 3, "new_code": "B"})
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "a\nB\nc"
    past_end = ReplaceCodeTool(workspace).run({"file_path": "app.py", "start_line": 9, "end_line": 9, "new_code": ""})
    assert past_end.success is False


def test_read_file_lines_numbers_lines(tmp_path):
    (tmp_path / "app.py").write_text("one\ntwo\nthree\n", encoding="utf-8")
    result = ReadFileLinesTool(Workspace(tmp_path)).run({"file_path": "app.py", "start_line": 2, "end_line": 3})
    assert "2: two\n3: three" in result.content


def test_batch_changes_report_each_file(tmp_path):
    (tmp_path / "taken").mkdir()
    tool = ApplyChangesBatchTool(Workspace(tmp_path))
    result = tool.run(
        {"changes": [{"file": "a.py", "content": "a"}, {"file": "taken", "content": "x"}, {"file": "b.py", "content": "b"}]}
    )
    assert result.success is False
    assert "Applied 2/3 change(s)" in result.content
    assert (tmp_path / "a.py").exists()
    assert (tmp_path / "b.py").exists()


def test_derive_test_path():
    assert derive_test_path("src/app.py") == "src/test_app.py"
    assert derive_test_path("tests/test_app.py") == "tests/test_app.py"
    assert derive_test_path("web/button.tsx") == "web/button.test.tsx"
    assert derive_test_path("cmd/main.go") == "cmd/main_test.go"
