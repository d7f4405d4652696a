"""Shared construction helpers for models, tools, and agents."""

from __future__ import annotations

from pathlib import Path

from codeloop.agent import AgentLoopController
from codeloop.compaction import ContextCompactor
from codeloop.completion import TaskCompletionOracle
from codeloop.config import Settings
from codeloop.memory import ScratchStore
from codeloop.models.base import BaseChatModel
from codeloop.models.mock import MockChatModel
from codeloop.models.ollama import OllamaChatModel
from codeloop.models.openai_compat import OpenAICompatChatModel
from codeloop.safety.policy import AgentPolicy
from codeloop.subagents import SubagentDelegator, SubagentRegistry, TaskTool, load_descriptors
from codeloop.tools.builtins.code import code_tools
from codeloop.tools.builtins.files import file_tools
from codeloop.tools.builtins.git import git_tools
from codeloop.tools.builtins.scratch import ReadStoredResultTool
from codeloop.tools.builtins.shell import shell_tools
from codeloop.tools.builtins.todos import WriteTodosTool
from codeloop.tools.executor import ToolExecutor
from codeloop.tools.registry import ToolRegistry
from codeloop.tools.workspace import Workspace
from codeloop.trace import TraceRecorder

BACKENDS = ("ollama", "openai", "mock")


def build_model(settings: Settings, use_mock: bool = False) -> BaseChatModel:
    backend = "mock" if use_mock else settings.backend.lower()
    if backend == "mock":
        return MockChatModel()
    if backend == "ollama":
        return OllamaChatModel(
            base_url=settings.base_url,
            model=settings.model,
            timeout_seconds=settings.request_timeout_seconds,
            temperature=settings.temperature,
            supports_tools=bool(settings.native_tools),
        )
    if backend == "openai":
        return OpenAICompatChatModel(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout_seconds=settings.request_timeout_seconds,
            temperature=settings.temperature,
            supports_tools=settings.native_tools is not False,
        )
    raise ValueError(f"Unknown backend '{settings.backend}'. Choose one of: {', '.join(BACKENDS)}")


def build_registry(settings: Settings) -> ToolRegistry:
    workspace = Workspace(settings.workspace_dir)
    registry = ToolRegistry()
    registry.register_all(file_tools(workspace))
    registry.register_all(code_tools(workspace))
    registry.register_all(shell_tools(workspace, settings.command_timeout_seconds))
    registry.register_all(git_tools(workspace, settings.command_timeout_seconds))
    registry.register(WriteTodosTool())
    return registry


def build_policy(settings: Settings) -> AgentPolicy:
    return AgentPolicy(
        max_iterations=settings.max_iterations,
        max_runtime_seconds=float(settings.max_runtime_seconds),
        max_consecutive_failures=settings.max_consecutive_failures,
        nudge_iterations=settings.nudge_iterations,
        completion_check_interval=settings.completion_check_interval,
        loop_window=settings.loop_window,
        loop_repeat_threshold=settings.loop_repeat_threshold,
        compaction_threshold=settings.compaction_threshold,
        compaction_keep_recent=settings.compaction_keep_recent,
        eviction_threshold_chars=settings.eviction_threshold_chars,
        eviction_preview_chars=settings.eviction_preview_chars,
        max_message_chars=settings.max_message_chars,
        subagent_max_result_chars=settings.subagent_max_result_chars,
    )


def build_store(settings: Settings) -> ScratchStore:
    return ScratchStore(workspace_dir=Path(settings.workspace_dir).resolve())


def build_compactor(policy: AgentPolicy, store: ScratchStore | None) -> ContextCompactor:
    return ContextCompactor(
        store=store,
        threshold=policy.compaction_threshold,
        keep_recent=policy.compaction_keep_recent,
        eviction_threshold=policy.eviction_threshold_chars,
        preview_chars=policy.eviction_preview_chars,
        max_message_chars=policy.max_message_chars,
    )


def build_subagents(settings: Settings) -> SubagentRegistry:
    if not settings.subagents_file:
        return SubagentRegistry()
    return SubagentRegistry(load_descriptors(settings.subagents_file))


def build_agent(
    settings: Settings,
    model: BaseChatModel,
    registry: ToolRegistry | None = None,
    *,
    subagents: SubagentRegistry | None = None,
    trace: TraceRecorder | None = None,
) -> AgentLoopController:
    """Wire a controller with the ``task`` delegation and stored-result tools registered."""
    registry = registry if registry is not None else build_registry(settings)
    policy = build_policy(settings)
    store = build_store(settings)
    executor = ToolExecutor(registry, allow_tools=policy.allow_tools)
    delegator = SubagentDelegator(
        model,
        executor,
        registry=subagents if subagents is not None else build_subagents(settings),
        policy=policy,
        store=store,
    )
    registry.register(ReadStoredResultTool(store))
    task_tool = TaskTool(delegator)
    registry.register(task_tool)
    controller = AgentLoopController(
        model=model,
        executor=executor,
        policy=policy,
        compactor=build_compactor(policy, store),
        oracle=TaskCompletionOracle(store.workspace_dir),
        trace=trace,
        workspace_dir=str(store.workspace_dir),
    )
    task_tool.bind(controller)
    return controller
