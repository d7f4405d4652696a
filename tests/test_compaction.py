from __future__ import annotations

import pytest

from codeloop.compaction import ContextCompactor
from codeloop.memory import ScratchStore
from codeloop.models.base import ToolCall
from codeloop.state import Message
from codeloop.tools.builtins.scratch import ReadStoredResultTool


def _history(count: int) -> list[Message]:
    messages = [Message(role="user", content="Refactor the payment module")]
    index = 0
    while len(messages) < count:
        if index % 2 == 0:
            call = ToolCall(id=f"call_{index}", name="read_file", arguments={"file_path": f"src/mod_{index}.py"})
            messages.append(Message(role="assistant", content="", tool_calls=[call]))
        else:
            content = "Error: file missing" if index % 6 == 1 else f"contents {index}"
            messages.append(Message(role="tool", content=content, tool_call_id=f"call_{index - 1}", name="read_file"))
        index += 1
    return messages


def test_compaction_keeps_summary_plus_recent_messages():
    history = _history(51)
    compactor = ContextCompactor(threshold=50, keep_recent=6)
    outcome = compactor.compact(history)
    assert outcome.compacted is True
    assert outcome.fallback is False
    assert len(outcome.messages) == 7
    summary = outcome.messages[0]
    assert summary.role == "system"
    assert summary.content.startswith("[Previous conversation summarized: 45 messages compressed]")
    assert "Original request: Refactor the payment module" in summary.content
    assert "- Tool: read_file(" in summary.content
    assert outcome.messages[1:] == history[-6:]


def test_compaction_below_threshold_is_a_no_op():
    history = _history(50)
    outcome = ContextCompactor(threshold=50, keep_recent=6).compact(history)
    assert outcome.compacted is False
    assert outcome.messages == history


def test_summary_counts_outcomes_and_files():
    compactor = ContextCompactor()
    text = compactor.summarize(_history(13))
    assert "Files touched: src/mod_0.py" in text
    assert "Outcomes:" in text
    assert "failed" in text


def test_repeated_compaction_merges_previous_summary():
    compactor = ContextCompactor(threshold=10, keep_recent=3)
    first = compactor.compact(_history(11)).messages
    second = compactor.compact(first + _history(8)[1:])
    assert second.compacted is True
    assert "Original request: Refactor the payment module" in second.messages[0].content
    assert "src/mod_0.py" in second.messages[0].content


def test_compaction_falls_back_to_truncation(monkeypatch: pytest.MonkeyPatch):
    compactor = ContextCompactor(threshold=50, keep_recent=6)

    def _boom(messages):
        raise RuntimeError("summary failed")

    monkeypatch.setattr(compactor, "summarize", _boom)
    history = _history(51)
    outcome = compactor.compact(history)
    assert outcome.fallback is True
    assert len(outcome.messages) == 7
    assert outcome.messages[0].content.startswith("[Earlier conversation truncated: 45 messages dropped]")
    assert outcome.messages[1:] == history[-6:]


def test_large_result_is_evicted_with_preview(tmp_path):
    store = ScratchStore(workspace_dir=tmp_path)
    compactor = ContextCompactor(store=store)
    content = "".join(str(index % 10) for index in range(60_000))
    outcome = compactor.evict("run_command", content)
    assert outcome.evicted is True
    assert outcome.entry is not None
    assert outcome.content.startswith(f"[Large result evicted to file: {outcome.entry.relative_path}]")
    assert f"Result preview (first 1000 chars):\n{content[:1000]}\n\n" in outcome.content
    assert content[:1001] not in outcome.content
    assert "(60000 characters total)" in outcome.content
    assert f'read_stored_result("{outcome.entry.relative_path}", offset=0)' in outcome.content
    assert store.load(outcome.entry.handle) == content
    assert store.load(outcome.entry.relative_path) == content
    assert (tmp_path / outcome.entry.relative_path).read_text(encoding="utf-8") == content


def test_small_result_is_not_evicted(tmp_path):
    compactor = ContextCompactor(store=ScratchStore(workspace_dir=tmp_path))
    outcome = compactor.evict("read_file", "short")
    assert outcome.evicted is False
    assert outcome.content == "short"


def test_eviction_without_store_truncates():
    compactor = ContextCompactor(store=None, eviction_threshold=100)
    outcome = compactor.evict("run_command", "x" * 500)
    assert outcome.fallback is True
    assert outcome.content.startswith("x" * 100)
    assert "[TRUNCATED_TAIL]" in outcome.content


def test_store_rejects_paths_outside_cache(tmp_path):
    store = ScratchStore(workspace_dir=tmp_path)
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")
    with pytest.raises(KeyError):
        store.load("secret.txt")


def test_clip_keeps_tail_of_error_output():
    compactor = ContextCompactor(max_message_chars=50)
    clipped = compactor.clip("noise " * 40 + "Traceback: boom at the end")
    assert clipped.startswith("[TRUNCATED_HEAD]")
    assert clipped.endswith("boom at the end")
    assert len(clipped) == 50


def test_stored_result_is_read_back_in_slices(tmp_path):
    store = ScratchStore(workspace_dir=tmp_path)
    compactor = ContextCompactor(store=store, eviction_threshold=1_000)
    content = "".join(f"line {index}\n" for index in range(500))
    outcome = compactor.evict("run_command", content)
    assert outcome.entry is not None
    tool = ReadStoredResultTool(store)

    first = tool.run({"path": outcome.entry.relative_path, "length": 1_500})
    assert first.success is True
    assert first.content.startswith(f"Stored result {outcome.entry.relative_path}, characters 0-1500 of {len(content)}:\n")
    assert content[:1_500] in first.content
    assert f'read_stored_result("{outcome.entry.relative_path}", offset=1500)' in first.content
    assert compactor.evict("read_stored_result", first.content).content == first.content

    last = tool.run({"path": outcome.entry.handle, "offset": len(content) - 10})
    assert last.content.endswith(content[-10:])
    assert "characters remain" not in last.content
    assert tool.run({"path": outcome.entry.handle, "offset": len(content)}).success is False
    assert tool.run({"path": "src/app.py"}).error == "Unknown scratch entry: src/app.py"
