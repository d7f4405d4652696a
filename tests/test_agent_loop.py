from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel

from codeloop.agent import AgentLoopController, RunCallbacks, TerminationReason, is_generic
from codeloop.compaction import ContextCompactor
from codeloop.failures import FailureTag
from codeloop.memory import ScratchStore
from codeloop.models.base import ModelResponse, ToolCall
from codeloop.models.errors import ConnectionRefusedModelError
from codeloop.models.mock import MockChatModel
from codeloop.prompts import EXPLORE_NUDGE, LOOP_CORRECTION
from codeloop.safety.policy import AgentPolicy
from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.builtins.files import file_tools
from codeloop.tools.builtins.scratch import ReadStoredResultTool
from codeloop.tools.builtins.todos import WriteTodosTool
from codeloop.tools.executor import ToolExecutor
from codeloop.tools.registry import ToolRegistry
from codeloop.tools.workspace import Workspace
from codeloop.trace import TraceRecorder


class CommandInput(BaseModel):
    command: str
    cwd: str = "."


class ExistingDirCommand(Tool):
    name = "run_command"
    description = "fake shell"
    input_schema = CommandInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = CommandInput.model_validate(data)
        return ToolResult.fail(f"Command failed with exit code 1: {payload.command}\nmkdir: cannot create directory 'src': File exists")


class DumpInput(BaseModel):
    size: int


class DumpTool(Tool):
    name = "dump_logs"
    description = "returns a lot of text"
    input_schema = DumpInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = DumpInput.model_validate(data)
        return ToolResult.ok("L" * payload.size)


def _executor(tmp_path, *extra: Tool) -> ToolExecutor:
    registry = ToolRegistry()
    registry.register_all(file_tools(Workspace(tmp_path)))
    registry.register_all(extra)
    return ToolExecutor(registry)


def _write(path: str, content: str) -> ToolCall:
    return ToolCall(name="write_file", arguments={"file_path": path, "content": content})


def _user_messages(result) -> list[str]:
    return [message.content for message in result.messages if message.role == "user"]


def test_end_to_end_create_notes_file(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[_write("notes.txt", "hello")]),
            ModelResponse(content="notes.txt now holds the requested greeting."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path), workspace_dir=str(tmp_path))
    executed: list[tuple[ToolCall, ToolResult]] = []
    result = controller.orchestrate(
        "create a file named notes.txt with content 'hello'",
        callbacks=RunCallbacks(on_tool_execution=lambda call, res: executed.append((call, res))),
    )
    assert (tmp_path / "notes.txt").read_text(encoding="utf-8") == "hello"
    assert len(executed) == 1
    call, tool_result = executed[0]
    assert call.name == "write_file"
    assert call.arguments == {"file_path": "notes.txt", "content": "hello"}
    assert tool_result.success is True
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert result.answer == "notes.txt now holds the requested greeting."
    assert result.files_modified == ["notes.txt"]
    assert controller.oracle.check(controller.state).complete is True
    assert "Files modified: notes.txt" in result.report


def test_text_protocol_for_models_without_native_tools(tmp_path):
    tagged = (
        "<tool_call>\n<tool_name>write_file</tool_name>\n"
        '<arguments>{"file_path": "notes.txt", "content": "hello"}</arguments>\n</tool_call>'
    )
    model = MockChatModel(
        scripted=[ModelResponse(content=tagged), ModelResponse(content="notes.txt now holds the requested greeting.")],
        supports_tools=False,
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("create a file named notes.txt with content 'hello'")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert (tmp_path / "notes.txt").read_text(encoding="utf-8") == "hello"
    system_prompt = model.calls[0][0]["content"]
    assert "<tool_call>" in system_prompt
    assert "- write_file(file_path, content)" in system_prompt
    second_turn = model.calls[1]
    assert all("tool_calls" not in message for message in second_turn)
    assert any(
        message["role"] == "user" and message["content"].startswith("Tool result (write_file):")
        for message in second_turn
    )


def test_structured_calls_are_linked_to_observations(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(content="The workspace is empty, there is nothing to review."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("review the workspace")
    assistant, tool = result.messages[1], result.messages[2]
    assert assistant.tool_calls[0].id == "call_1_0"
    assert tool.role == "tool"
    assert tool.tool_call_id == "call_1_0"
    assert tool.name == "list_files"
    payload = model.calls[1]
    assert payload[2]["tool_calls"][0]["id"] == "call_1_0"
    assert payload[3]["role"] == "tool"


def test_generic_answer_is_nudged_on_early_iterations(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(content="Sure!"),
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(content="The workspace contains no files yet, so nothing to explain."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("explain the project layout")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert EXPLORE_NUDGE in _user_messages(result)
    assert result.iterations == 3


def test_generic_answer_after_nudge_window_ends_run(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(content="ok"),
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(content="Let me know if you have any questions."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("explain the project layout")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert result.answer == "Let me know if you have any questions."
    assert result.iterations == 3


def test_consecutive_think_turns_get_framework_guidance(tmp_path):
    model = MockChatModel(scripted=[ModelResponse(content="hmm")] * 4)
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("build a fastapi service")
    nudges = _user_messages(result)[1:]
    assert nudges[:2] == [EXPLORE_NUDGE, EXPLORE_NUDGE]
    assert nudges[2].startswith("You've been thinking about this task for a while.")
    assert "FastAPI: pip install fastapi uvicorn" in nudges[2]
    assert len(nudges) == 3
    assert result.iterations == 4
    assert result.reason == TerminationReason.FINAL_ANSWER


def test_completion_claim_is_verified(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(content="I have completed the task and everything works as requested."),
            ModelResponse(content="COMPLETE: no\nSUMMARY: notes.txt was never written."),
            ModelResponse(tool_calls=[_write("notes.txt", "hi")]),
            ModelResponse(content="notes.txt now includes a friendly greeting line."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("add a greeting to notes.txt")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert result.answer == "notes.txt now includes a friendly greeting line."
    assert any("notes.txt was never written." in text for text in _user_messages(result))
    assert (tmp_path / "notes.txt").exists()


def test_consecutive_failures_stop_the_run(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="read_file", arguments={"file_path": f"missing_{index}.py"})])
            for index in range(5)
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("fix the bug in missing.py")
    assert result.reason == TerminationReason.CONSECUTIVE_FAILURES
    assert result.iterations == 3
    assert [event.tag for event in result.failures].count(FailureTag.TOOL_ERROR) == 3
    assert result.failures[-1].tag == FailureTag.CONSECUTIVE_FAILURES
    assert len(result.errors) == 3


def test_success_resets_failure_streak(tmp_path):
    missing = ToolCall(name="read_file", arguments={"file_path": "missing.py"})
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[missing]),
            ModelResponse(tool_calls=[ToolCall(name="read_file", arguments={"file_path": "other.py"})]),
            ModelResponse(tool_calls=[_write("missing.py", "x = 1\n")]),
            ModelResponse(tool_calls=[ToolCall(name="read_file", arguments={"file_path": "gone.py"})]),
            ModelResponse(content="missing.py exists now with a module level constant."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("create missing.py")
    assert result.reason == TerminationReason.FINAL_ANSWER


def test_already_exists_setup_error_is_soft_success(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="run_command", arguments={"command": "mkdir src"})]),
            ModelResponse(tool_calls=[ToolCall(name="run_command", arguments={"command": "mkdir src"})]),
            ModelResponse(tool_calls=[ToolCall(name="run_command", arguments={"command": "mkdir src"})]),
            ModelResponse(content="The src directory was already there, nothing else to do."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path, ExistingDirCommand()))
    result = controller.orchestrate("set up a src directory")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert result.errors == []
    assert FailureTag.TOOL_ERROR not in [event.tag for event in result.failures]
    tool_messages = [message for message in result.messages if message.role == "tool"]
    assert tool_messages[0].content == "src already exists, so this setup step is already done."
    assert any("Skip creating it" in text for text in _user_messages(result))


def test_loop_detection_injects_correction(tmp_path):
    (tmp_path / "README.md").write_text("# demo\n", encoding="utf-8")
    read = ToolCall(name="read_file", arguments={"file_path": "README.md"})
    model = MockChatModel(
        scripted=[ModelResponse(tool_calls=[read]) for _ in range(4)]
        + [ModelResponse(content="README.md only holds a title, there is nothing more to learn.")]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("summarise README.md")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert LOOP_CORRECTION in _user_messages(result)
    assert FailureTag.LOOP_DETECTED in [event.tag for event in result.failures]
    assert controller.loop_detector.keys == []
    assert result.files_read == ["README.md"]


def test_loop_with_completed_work_terminates_via_oracle(tmp_path):
    read = ToolCall(name="read_file", arguments={"file_path": "app.py"})
    model = MockChatModel(
        scripted=[ModelResponse(tool_calls=[_write("app.py", "print('hi')\n")])]
        + [ModelResponse(tool_calls=[read]) for _ in range(4)]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate("fix the greeting in app.py")
    assert result.reason == TerminationReason.ORACLE_COMPLETE
    assert "app.py" in result.answer
    assert model.remaining == 0


def test_periodic_check_does_not_cut_off_multi_step_edits(tmp_path):
    read = ToolCall(name="read_file", arguments={"file_path": "a.py"})
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[_write("a.py", "def helper():\n    return 1\n")]),
            ModelResponse(tool_calls=[read]),
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(tool_calls=[read]),
            ModelResponse(tool_calls=[ToolCall(name="get_file_info", arguments={"file_path": "a.py"})]),
            ModelResponse(tool_calls=[_write("test_a.py", "from a import helper\n\n\ndef test_helper():\n    assert helper() == 1\n")]),
            ModelResponse(content="a.py gained a helper and test_a.py exercises it."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path), workspace_dir=str(tmp_path))
    result = controller.orchestrate("add a helper to a.py and add a test for it in test_a.py")
    assert result.reason == TerminationReason.FINAL_ANSWER
    assert result.iterations == 7
    assert (tmp_path / "test_a.py").exists()
    assert result.files_modified == ["a.py", "test_a.py"]


def test_periodic_check_accepts_existing_project_markers(tmp_path):
    (tmp_path / "manage.py").write_text("import django\n", encoding="utf-8")
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(tool_calls=[ToolCall(name="read_file", arguments={"file_path": "manage.py"})]),
            ModelResponse(tool_calls=[ToolCall(name="get_file_info", arguments={"file_path": "manage.py"})]),
            ModelResponse(tool_calls=[ToolCall(name="search_files", arguments={"pattern": "*.py"})]),
            ModelResponse(
                tool_calls=[
                    ToolCall(name="read_file_lines", arguments={"file_path": "manage.py", "start_line": 1, "end_line": 1})
                ]
            ),
            ModelResponse(content="unused"),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path), workspace_dir=str(tmp_path))
    result = controller.orchestrate("create a django project")
    assert result.reason == TerminationReason.ORACLE_COMPLETE
    assert result.iterations == 5
    assert "manage.py" in result.answer
    assert model.remaining == 1


def test_iteration_cap(tmp_path):
    model = MockChatModel(
        scripted=[ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={"directory_path": "."})])] * 3
    )
    controller = AgentLoopController(model, _executor(tmp_path), policy=AgentPolicy(max_iterations=2))
    result = controller.orchestrate("look around")
    assert result.reason == TerminationReason.ITERATION_CAP
    assert result.iterations == 2
    assert result.failures[-1].tag == FailureTag.ITERATION_CAP


def test_transport_error_is_fatal(tmp_path):
    error = ConnectionRefusedModelError("Cannot connect to Ollama at http://localhost:11434. Make sure it is running", "http://localhost:11434")
    controller = AgentLoopController(MockChatModel(scripted=[error]), _executor(tmp_path))
    result = controller.orchestrate("fix the bug")
    assert result.reason == TerminationReason.TRANSPORT_ERROR
    assert "Cannot connect to Ollama" in result.answer
    assert result.failures[0].tag == FailureTag.TRANSPORT_ERROR
    assert result.completed is False


def test_wall_clock_is_checked_before_each_tool(tmp_path):
    now = [0.0]

    class SlowModel(MockChatModel):
        def chat(self, messages, tools, timeout=None):
            now[0] += 400
            return super().chat(messages, tools, timeout)

    model = SlowModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={"directory_path": "src"})]),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path), clock=lambda: now[0])
    result = controller.orchestrate("look around")
    assert result.reason == TerminationReason.TIMEOUT
    assert result.tools_used == ["list_files"]
    assert result.failures[-1].tag == FailureTag.TIMEOUT


def test_large_tool_output_is_evicted(tmp_path):
    store = ScratchStore(workspace_dir=tmp_path)
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="dump_logs", arguments={"size": 60_000})]),
            ModelResponse(content="The logs are large but contain only repeated markers."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path, DumpTool()), compactor=ContextCompactor(store=store))
    result = controller.orchestrate("inspect the logs")
    observation = next(message for message in result.messages if message.role == "tool")
    assert observation.content.startswith("[Large result evicted to file: .codeloop_cache/")
    assert len(observation.content) < 2_000
    entry = next(iter(store.entries.values()))
    assert store.load(entry.handle) == "L" * 60_000


def test_todos_are_tracked_in_state(tmp_path):
    todos = [{"task": "write notes", "status": "completed"}, {"task": "review", "status": "pending"}]
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="write_todos", arguments={"todos": todos})]),
            ModelResponse(content="The plan is recorded and the first item is finished."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path, WriteTodosTool()))
    result = controller.orchestrate("plan the work")
    assert [item.task for item in controller.state.todos] == ["write notes", "review"]
    assert "Todos: 1/2 completed" in result.report


def test_callback_errors_do_not_break_the_run(tmp_path):
    def explode(*_args):
        raise RuntimeError("ui went away")

    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="list_files", arguments={})]),
            ModelResponse(content="Nothing in the workspace needs attention right now."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    result = controller.orchestrate(
        "look around",
        callbacks=RunCallbacks(on_progress=explode, on_tool_execution=explode, on_message=explode),
    )
    assert result.reason == TerminationReason.FINAL_ANSWER


def test_controller_reuse_starts_fresh(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[_write("a.txt", "a")]),
            ModelResponse(content="a.txt holds the single letter that was requested."),
            ModelResponse(content="There is nothing to change for this second request."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    controller.orchestrate("write a.txt")
    second = controller.orchestrate("describe the workspace")
    assert second.files_modified == []
    assert second.tools_used == []
    assert controller.state.task == "describe the workspace"
    assert len(second.messages) == 2


def test_trace_is_written(tmp_path):
    trace = TraceRecorder(trace_id="run-1", workspace_dir=str(tmp_path))
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[_write("notes.txt", "hello")]),
            ModelResponse(content="notes.txt now holds the requested greeting."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path), trace=trace)
    result = controller.orchestrate("create notes.txt")
    assert result.trace_path is not None
    data = json.loads((tmp_path / ".codeloop_traces" / "run-1.json").read_text(encoding="utf-8"))
    assert data["stats"]["reason"] == "final_answer"
    assert any(event["type"] == "tool_result" for event in data["events"])


def test_is_generic():
    assert is_generic("")
    assert is_generic("Done.")
    assert is_generic("Feel free to let me know if you need anything else!")
    assert not is_generic("Renamed the helper and updated both call sites.")


class PytestFailsCommand(Tool):
    name = "run_command"
    description = "fake shell where only pytest fails"
    input_schema = CommandInput

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = CommandInput.model_validate(data)
        if payload.command.startswith("pytest"):
            return ToolResult.fail("1 failed", content="FAILED test_a.py::test_helper")
        return ToolResult.ok("a.py\ntest_a.py")


def test_unrelated_success_keeps_earlier_command_error(tmp_path):
    model = MockChatModel(
        scripted=[
            ModelResponse(tool_calls=[_write("a.py", "def helper():\n    return 2\n")]),
            ModelResponse(tool_calls=[ToolCall(name="run_command", arguments={"command": "pytest"})]),
            ModelResponse(tool_calls=[ToolCall(name="run_command", arguments={"command": "ls"})]),
            ModelResponse(content="a.py has the helper but pytest still reports a failure."),
        ]
    )
    controller = AgentLoopController(model, _executor(tmp_path, PytestFailsCommand()))
    result = controller.orchestrate("add a helper to a.py")
    assert result.errors == ["run_command: 1 failed"]
    assert controller.oracle.check(controller.state).complete is False
    assert "Errors: 1" in result.report
    assert "Actions: 3 (2 succeeded)" in result.report


def test_thought_excludes_tool_call_markup(tmp_path):
    reply = (
        "I'll write the notes first.\n<tool_call>\n<tool_name>write_file</tool_name>\n"
        '<arguments>{"file_path": "notes.txt", "content": "hello"}</arguments>\n</tool_call>'
    )
    model = MockChatModel(
        scripted=[ModelResponse(content=reply), ModelResponse(content="notes.txt now holds the requested greeting.")],
        supports_tools=False,
    )
    controller = AgentLoopController(model, _executor(tmp_path))
    controller.orchestrate("create notes.txt")
    step = controller.state.steps[0]
    assert step.action is not None and step.action.name == "write_file"
    assert step.thought == "I'll write the notes first."


class PointerFollowingModel(MockChatModel):
    def chat(self, messages, tools, timeout=None):
        pointer = re.search(r'read_stored_result\("([^"]+)", offset=0\)', messages[-1]["content"])
        if pointer:
            self.calls.append(messages)
            return ModelResponse(
                tool_calls=[ToolCall(name="read_stored_result", arguments={"path": pointer.group(1), "offset": 50_000})]
            )
        return super().chat(messages, tools, timeout)


def test_evicted_result_can_be_read_back_through_a_tool(tmp_path):
    store = ScratchStore(workspace_dir=tmp_path)
    model = PointerFollowingModel(
        scripted=[
            ModelResponse(tool_calls=[ToolCall(name="dump_logs", arguments={"size": 60_000})]),
            ModelResponse(content="The logs are large but contain only repeated markers."),
        ]
    )
    executor = _executor(tmp_path, DumpTool(), ReadStoredResultTool(store))
    controller = AgentLoopController(model, executor, compactor=ContextCompactor(store=store))
    result = controller.orchestrate("inspect the logs")
    pointer, retrieved = [message for message in result.messages if message.role == "tool"]
    assert pointer.content.startswith("[Large result evicted to file: .codeloop_cache/")
    assert retrieved.name == "read_stored_result"
    assert retrieved.content.startswith("Stored result .codeloop_cache/")
    assert "characters 50000-60000 of 60000:\n" + "L" * 10_000 in retrieved.content
    assert len(store.entries) == 1
    assert result.reason == TerminationReason.FINAL_ANSWER
