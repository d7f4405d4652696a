from __future__ import annotations

import pytest

from codeloop import cli
from codeloop.agent import AgentResult, TerminationReason
from codeloop.config import Settings
from codeloop.factory import build_agent, build_model, build_policy
from codeloop.models.mock import MockChatModel
from codeloop.models.ollama import OllamaChatModel
from codeloop.models.openai_compat import OpenAICompatChatModel


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CODELOOP_BACKEND", "openai")
    monkeypatch.setenv("CODELOOP_MAX_ITERATIONS", "12")
    monkeypatch.setenv("CODELOOP_NATIVE_TOOLS", "false")
    settings = Settings()
    assert settings.backend == "openai"
    assert settings.max_iterations == 12
    assert settings.native_tools is False


def test_apply_overrides():
    args = cli.parse_args(
        ["fix the bug", "--workspace", "/tmp/ws", "--backend", "mock", "--timeout", "30", "--subagents", "agents.yaml"]
    )
    settings = cli.apply_overrides(Settings(), args)
    assert settings.workspace_dir == "/tmp/ws"
    assert settings.backend == "mock"
    assert settings.max_runtime_seconds == 30
    assert settings.subagents_file == "agents.yaml"
    assert args.task == "fix the bug"


def test_build_model_per_backend():
    ollama = build_model(Settings(backend="ollama"))
    assert isinstance(ollama, OllamaChatModel)
    assert ollama.supports_tools is False
    assert build_model(Settings(backend="ollama", native_tools=True)).supports_tools is True
    openai = build_model(Settings(backend="openai", base_url="https://example.com"))
    assert isinstance(openai, OpenAICompatChatModel)
    assert openai.supports_tools is True
    assert isinstance(build_model(Settings(), use_mock=True), MockChatModel)
    with pytest.raises(ValueError, match="Unknown backend"):
        build_model(Settings(backend="carrier-pigeon"))


def test_build_agent_registers_task_tool(tmp_path):
    settings = Settings(workspace_dir=str(tmp_path), max_iterations=7)
    agent = build_agent(settings, MockChatModel())
    names = agent.executor.tool_names()
    assert "task" in names
    assert "read_stored_result" in names
    assert agent.executor.registry.get("task").time_budget == agent.remaining_seconds
    assert {"read_file", "write_file", "run_command", "git_status", "write_todos"} <= set(names)
    assert agent.policy.max_iterations == 7
    assert build_policy(settings).max_runtime_seconds == 600.0


def test_main_runs_a_task(tmp_path, capsys):
    code = cli.main(["describe the workspace", "--workspace", str(tmp_path), "--backend", "mock"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Result: final_answer" in out
    assert "Mock response to: describe the workspace" in out


def test_main_requires_a_task(capsys):
    assert cli.main([]) == 2
    assert "A task is required" in capsys.readouterr().err


def test_main_exit_code_reflects_result(tmp_path, monkeypatch: pytest.MonkeyPatch):
    class StubAgent:
        def orchestrate(self, task, system_prompt=None, callbacks=None):
            return AgentResult(answer="gave up", reason=TerminationReason.ITERATION_CAP)

    monkeypatch.setattr(cli, "build_agent", lambda settings, model, trace=None: StubAgent())
    assert cli.main(["fix it", "--workspace", str(tmp_path), "--backend", "mock"]) == 1
