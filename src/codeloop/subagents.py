"""Context-isolated delegation of sub-tasks to nested agent runs."""

from __future__ import annotations

import json
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable

from pydantic import BaseModel, Field, ValidationError

from codeloop.compaction import ContextCompactor
from codeloop.failures import SubagentConfigError, SubagentNameConflictError
from codeloop.memory import ScratchStore
from codeloop.models.base import BaseChatModel
from codeloop.prompts import DEFAULT_SYSTEM_PROMPT, SUBAGENT_INSTRUCTIONS
from codeloop.safety.policy import AgentPolicy
from codeloop.tools.base import Tool, ToolResult
from codeloop.tools.executor import ToolExecutor
from codeloop.util.logging import get_logger

if TYPE_CHECKING:
    from codeloop.agent import AgentLoopController

logger = get_logger(__name__)

GENERAL_PURPOSE = "general-purpose"
TASK_TOOL_NAME = "task"


class SubagentDescriptor(BaseModel):
    name: str = Field(min_length=1)
    description: str
    system_prompt: str
    tools: list[str] | None = None
    model: str | None = None


GENERAL_PURPOSE_DESCRIPTOR = SubagentDescriptor(
    name=GENERAL_PURPOSE,
    description=(
        "General-purpose agent for researching questions, searching code and carrying out "
        "multi-step tasks without filling the main conversation."
    ),
    system_prompt=DEFAULT_SYSTEM_PROMPT,
)


def _import_yaml():
    try:
        import yaml  # type: ignore
    except ImportError as exc:  # pragma: no cover - exercised in integration
        raise SubagentConfigError("Install codeloop[yaml] to load subagents from YAML.") from exc
    return yaml


class SubagentRegistry:
    """Named subagent descriptors. ``general-purpose`` is always present."""

    def __init__(self, descriptors: Iterable[SubagentDescriptor] = ()) -> None:
        self._descriptors: dict[str, SubagentDescriptor] = {GENERAL_PURPOSE: GENERAL_PURPOSE_DESCRIPTOR}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: SubagentDescriptor) -> None:
        if descriptor.name == GENERAL_PURPOSE:
            raise SubagentNameConflictError(
                f"Cannot override the built-in '{GENERAL_PURPOSE}' subagent"
            )
        if descriptor.name in self._descriptors:
            raise SubagentNameConflictError(f"Subagent '{descriptor.name}' is already registered")
        self._descriptors[descriptor.name] = descriptor

    def get(self, name: str) -> SubagentDescriptor | None:
        return self._descriptors.get(name)

    def names(self) -> list[str]:
        return list(self._descriptors)

    def describe(self) -> str:
        return "\n".join(f"- {item.name}: {item.description}" for item in self._descriptors.values())


def load_descriptors(path: str | Path) -> list[SubagentDescriptor]:
    """Read descriptors from a YAML or JSON file (a list, or a ``subagents`` key)."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SubagentConfigError(f"Cannot read subagents file {file_path}: {exc}") from exc
    if file_path.suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SubagentConfigError(f"Invalid JSON in {file_path}: {exc}") from exc
    else:
        yaml = _import_yaml()
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise SubagentConfigError(f"Invalid YAML in {file_path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("subagents")
    if not isinstance(data, list):
        raise SubagentConfigError("subagents file must contain a list of subagents.")
    descriptors = []
    for index, item in enumerate(data):
        try:
            descriptors.append(SubagentDescriptor.model_validate(item))
        except ValidationError as exc:
            raise SubagentConfigError(f"subagents[{index}] is invalid: {exc}") from exc
    return descriptors


class SubagentDelegator:
    """Runs a sub-task in a nested loop and returns only its final answer.

    The nested run shares the model backend and tools of the parent but owns
    its own state, history and system prompt. None of its intermediate
    messages reach the parent; the returned text is capped at
    ``max_result_chars``.
    """

    def __init__(
        self,
        model: BaseChatModel,
        executor: ToolExecutor,
        registry: SubagentRegistry | None = None,
        policy: AgentPolicy | None = None,
        store: ScratchStore | None = None,
        depth: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.executor = executor
        self.registry = registry or SubagentRegistry()
        self.policy = policy or AgentPolicy()
        self.store = store
        self.depth = depth
        self.clock = clock

    @property
    def max_result_chars(self) -> int:
        return self.policy.subagent_max_result_chars

    def delegate(self, name: str, task_text: str, time_budget: float | None = None) -> str:
        """Run ``task_text`` with subagent ``name``.

        ``time_budget`` is what is left of the caller's wall-clock allowance;
        the nested run never gets more than that.
        """
        from codeloop.agent import AgentLoopController

        descriptor = self.registry.get(name)
        if descriptor is None:
            available = ", ".join(self.registry.names())
            return f"Error: Unknown subagent '{name}'. Available subagents: {available}"
        policy = replace(self.policy)
        if time_budget is not None:
            if time_budget <= 0:
                return f"Error: No time left to run subagent {name}"
            policy.max_runtime_seconds = min(policy.max_runtime_seconds, time_budget)
        logger.info(
            "Delegating to subagent %s (depth %s, %.0fs budget).", name, self.depth + 1, policy.max_runtime_seconds
        )
        exclude = () if self.depth + 1 < self.policy.subagent_max_depth else (TASK_TOOL_NAME,)
        executor = self.executor.scoped(descriptor.tools, exclude=exclude)
        model = self.model.with_model(descriptor.model) if descriptor.model else self.model
        controller = AgentLoopController(
            model=model,
            executor=executor,
            policy=policy,
            compactor=ContextCompactor(
                store=self.store,
                threshold=policy.compaction_threshold,
                keep_recent=policy.compaction_keep_recent,
                eviction_threshold=policy.eviction_threshold_chars,
                preview_chars=policy.eviction_preview_chars,
                max_message_chars=policy.max_message_chars,
            ),
            workspace_dir=str(self.store.workspace_dir) if self.store is not None else None,
            clock=self.clock,
        )
        try:
            result = controller.orchestrate(task_text, descriptor.system_prompt + SUBAGENT_INSTRUCTIONS)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Subagent %s crashed.", name)
            return f"Error: Subagent {name} failed: {exc.__class__.__name__}: {exc}"
        if not result.answer.strip():
            return f"Error: Subagent {name} finished without a result ({result.reason.value})"
        status = "completed the task" if result.completed else f"stopped early ({result.reason.value})"
        return self._bounded(f"Subagent {name} {status}:\n\n{result.answer.strip()}", len(result.answer))

    def _bounded(self, text: str, answer_chars: int) -> str:
        if len(text) <= self.max_result_chars:
            return text
        marker = f"\n\n[Result truncated - subagent returned {answer_chars} characters]"
        return text[: max(0, self.max_result_chars - len(marker))] + marker


class TaskInput(BaseModel):
    task: str = Field(min_length=1, description="Complete description of the sub-task")
    subagent: str = Field(default=GENERAL_PURPOSE, description="Name of the subagent to use")


class TaskTool(Tool):
    """Exposes the delegator to the model as the ``task`` tool."""

    name = TASK_TOOL_NAME
    input_schema = TaskInput

    def __init__(self, delegator: SubagentDelegator) -> None:
        self.delegator = delegator
        self.time_budget: Callable[[], float] | None = None
        self.description = (
            "Delegate a self-contained sub-task to a subagent with its own context. "
            "Only its final summary comes back. Available subagents:\n"
            + delegator.registry.describe()
        )

    def bind(self, controller: AgentLoopController) -> None:
        """Limit delegated runs to the time ``controller`` has left."""
        self.time_budget = controller.remaining_seconds
        self.delegator.clock = controller.clock

    def run(self, data: BaseModel | dict[str, Any]) -> ToolResult:
        payload = TaskInput.model_validate(data)
        budget = self.time_budget() if self.time_budget is not None else None
        result = self.delegator.delegate(payload.subagent, payload.task, time_budget=budget)
        if result.startswith("Error:"):
            return ToolResult.fail(result[len("Error: ") :])
        return ToolResult.ok(result)

    def touched_paths(self, data: BaseModel) -> list[str]:
        return []
