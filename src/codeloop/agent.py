"""Core agent loop."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from codeloop.compaction import ContextCompactor
from codeloop.completion import TaskCompletionOracle, implies_mutation
from codeloop.failures import FailureEvent, FailureTag
from codeloop.loop_detector import LoopDetector, action_key
from codeloop.models.base import BaseChatModel, ModelResponse, ToolCall
from codeloop.models.errors import ModelTransportError
from codeloop.prompts import (
    ACT_NUDGE,
    ALREADY_EXISTS_PATTERNS,
    COMPLETION_CLAIMS,
    CONSECUTIVE_FAILURE_NOTICE,
    DEFAULT_SYSTEM_PROMPT,
    EXPLORE_NUDGE,
    GENERIC_PHRASES,
    LOOP_CORRECTION,
    SETUP_COMMAND_MARKERS,
    SOFT_SUCCESS_OBSERVATION,
    framework_guidance,
    next_step_hint,
    tool_prompt,
)
from codeloop.protocol import ToolCallProtocolParser
from codeloop.safety.policy import AgentPolicy
from codeloop.state import AgentState, Message, Phase, ReasoningStep
from codeloop.tools.base import ToolResult
from codeloop.tools.builtins.shell import count_passed_tests
from codeloop.tools.builtins.todos import WriteTodosInput
from codeloop.tools.executor import ToolExecutor
from codeloop.trace import TraceRecorder
from codeloop.util.logging import get_logger, redact

logger = get_logger(__name__)

MIN_ANSWER_CHARS = 20
TEST_TOOLS = {"run_tests", "run_tests_with_coverage"}
_CALL_ATTEMPT_MARKERS = ("<tool_call>", "<tool_name>")


class TerminationReason(str, Enum):
    FINAL_ANSWER = "final_answer"
    ORACLE_COMPLETE = "oracle_complete"
    ITERATION_CAP = "iteration_cap"
    TIMEOUT = "timeout"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class RunCallbacks:
    """One-way notifications. Return values are ignored and exceptions are logged."""

    on_progress: Callable[[str], Any] | None = None
    on_tool_execution: Callable[[ToolCall, ToolResult], Any] | None = None
    on_message: Callable[[Message], Any] | None = None


@dataclass
class AgentResult:
    answer: str
    reason: TerminationReason
    iterations: int = 0
    tools_used: list[str] = field(default_factory=list)
    files_read: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    failures: list[FailureEvent] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    report: str = ""
    trace_path: str | None = None

    @property
    def completed(self) -> bool:
        return self.reason in (TerminationReason.FINAL_ANSWER, TerminationReason.ORACLE_COMPLETE)


def is_generic(text: str) -> bool:
    """Empty, very short, or stock filler such as an invitation to ask questions."""
    stripped = text.strip()
    if len(stripped) < MIN_ANSWER_CHARS:
        return True
    lowered = stripped.lower()
    return any(phrase in lowered for phrase in GENERIC_PHRASES)


def build_report(state: AgentState, result: AgentResult) -> str:
    succeeded = len(state.verified_actions)
    actions = sum(1 for step in state.steps if step.action is not None)
    lines = [
        f"Task: {state.task}",
        f"Result: {result.reason.value} after {result.iterations} iteration(s)",
        f"Actions: {actions} ({succeeded} succeeded)",
    ]
    if result.tools_used:
        counts = Counter(result.tools_used)
        lines.append("Tools used: " + ", ".join(f"{name} x{count}" for name, count in counts.most_common()))
    if state.files_read:
        lines.append("Files read: " + ", ".join(sorted(state.files_read)))
    if state.files_modified:
        lines.append("Files modified: " + ", ".join(sorted(state.files_modified)))
    if state.tests_run:
        lines.append(f"Tests: {state.tests_passed}/{state.tests_run} passed")
    if state.todos:
        done = sum(1 for item in state.todos if item.status == "completed")
        lines.append(f"Todos: {done}/{len(state.todos)} completed")
    lines.append(f"Errors: {len(state.errors)}")
    lines.extend(f"  - {error[:200]}" for error in state.errors[-3:])
    return "\n".join(lines)


class AgentLoopController:
    """Drives one task through model calls and tool executions until it stops.

    Each iteration checks the wall clock, compacts the history, asks the model
    for its next move and runs the requested tools one after another. A run
    ends on a final answer, on a positive completion check (project markers
    found periodically, or any evidence after a detected loop), or when one of
    the policy caps is hit. Tool errors are ordinary observations; only
    transport errors, timeouts and too many consecutive tool failures are
    fatal.

    The controller can be reused: every ``orchestrate`` call starts from a
    fresh ``AgentState``.
    """

    def __init__(
        self,
        model: BaseChatModel,
        executor: ToolExecutor,
        policy: AgentPolicy | None = None,
        compactor: ContextCompactor | None = None,
        oracle: TaskCompletionOracle | None = None,
        parser: ToolCallProtocolParser | None = None,
        trace: TraceRecorder | None = None,
        workspace_dir: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.executor = executor
        self.policy = policy or AgentPolicy()
        self.compactor = compactor or ContextCompactor(
            threshold=self.policy.compaction_threshold,
            keep_recent=self.policy.compaction_keep_recent,
            eviction_threshold=self.policy.eviction_threshold_chars,
            preview_chars=self.policy.eviction_preview_chars,
            max_message_chars=self.policy.max_message_chars,
        )
        self.oracle = oracle or TaskCompletionOracle(workspace_dir)
        self.parser = parser or ToolCallProtocolParser(executor.tool_names())
        self.trace = trace
        self.clock = clock
        self.state = AgentState(task="")
        self.messages: list[Message] = []
        self.loop_detector = self._new_loop_detector()
        self.callbacks = RunCallbacks()
        self.iterations = 0
        self.tools_used: list[str] = []
        self.failures: list[FailureEvent] = []
        self._system_prompt = DEFAULT_SYSTEM_PROMPT
        self._deadline = 0.0
        self._consecutive_failures = 0
        self._no_tool_turns = 0

    def _new_loop_detector(self) -> LoopDetector:
        return LoopDetector(
            window=self.policy.loop_window,
            repeat_threshold=self.policy.loop_repeat_threshold,
            stall_threshold=self.policy.stall_read_threshold,
        )

    def reset(self, task: str = "") -> None:
        self.state = AgentState(task=task)
        self.messages = []
        self.loop_detector = self._new_loop_detector()
        self.iterations = 0
        self.tools_used = []
        self.failures = []
        self._consecutive_failures = 0
        self._no_tool_turns = 0

    def orchestrate(
        self,
        task: str,
        system_prompt: str | None = None,
        callbacks: RunCallbacks | None = None,
    ) -> AgentResult:
        self.reset(task)
        self.callbacks = callbacks or RunCallbacks()
        self._system_prompt = self._build_system_prompt(system_prompt)
        self._deadline = self.clock() + self.policy.max_runtime_seconds
        logger.info("Agent run started (model=%s, native_tools=%s).", self.model.model, self.model.supports_tools)
        logger.info("Task: %s", redact(task))
        self._append(Message(role="user", content=task))

        for iteration in range(1, self.policy.max_iterations + 1):
            self.iterations = iteration
            if self.remaining_seconds() <= 0:
                return self._timeout()
            self._notify(self.callbacks.on_progress, f"Iteration {iteration}/{self.policy.max_iterations}")
            self._compact()
            try:
                response = self.model.chat(self._payload(), self._tool_catalog(), timeout=self.remaining_seconds())
            except ModelTransportError as exc:
                logger.error("Model request failed: %s", exc)
                self._fail(FailureTag.TRANSPORT_ERROR, str(exc), {"url": exc.url})
                return self._finish(TerminationReason.TRANSPORT_ERROR, str(exc))
            calls = self._extract_calls(response, iteration)
            if self.trace:
                self.trace.record_model_response(response.content, calls)
            if not calls:
                outcome = self._handle_answer(response.content or "", iteration)
                if outcome is not None:
                    return outcome
                continue

            self._no_tool_turns = 0
            self._append(Message(role="assistant", content=response.content or "", tool_calls=calls))
            thought = self.parser.strip_tool_calls(response.content or "")
            for call in calls:
                if self.remaining_seconds() <= 0:
                    return self._timeout()
                self._dispatch(call, thought)
                if self._consecutive_failures >= self.policy.max_consecutive_failures:
                    notice = CONSECUTIVE_FAILURE_NOTICE.format(count=self._consecutive_failures)
                    last_error = self.state.errors[-1] if self.state.errors else ""
                    self._fail(FailureTag.CONSECUTIVE_FAILURES, notice, {"last_error": last_error})
                    return self._finish(TerminationReason.CONSECUTIVE_FAILURES, f"{notice}\n{last_error}".strip())

            if self.loop_detector.detect(self.state.mutation_count):
                reason = self.loop_detector.reason or "loop detected"
                logger.warning("Loop detected: %s", reason)
                self._fail(FailureTag.LOOP_DETECTED, reason)
                verdict = self.oracle.check(self.state)
                if verdict.complete:
                    return self._finish(TerminationReason.ORACLE_COMPLETE, verdict.summary)
                self.nudge(LOOP_CORRECTION)
                self.loop_detector.reset()
            elif iteration % self.policy.completion_check_interval == 0 and self.tools_used:
                verdict = self.oracle.check_markers(self.state)
                if verdict.complete:
                    logger.info("Completion check passed: %s", verdict.summary)
                    return self._finish(TerminationReason.ORACLE_COMPLETE, verdict.summary)

        self._fail(FailureTag.ITERATION_CAP, f"reached {self.policy.max_iterations} iterations")
        return self._finish(TerminationReason.ITERATION_CAP, self._last_answer())

    def nudge(self, text: str) -> None:
        """Inject guidance for the model's next turn."""
        self._append(Message(role="user", content=text))

    def _build_system_prompt(self, system_prompt: str | None) -> str:
        prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        if not self.model.supports_tools:
            prompt += "\n" + tool_prompt(self.executor.describe())
        return prompt

    def _tool_catalog(self) -> list[dict[str, Any]] | None:
        if not self.model.supports_tools:
            return None
        return self.executor.catalog() or None

    def _payload(self) -> list[dict[str, Any]]:
        """History as backend messages, with the system prompt in front.

        Tool results whose call is not visible (no native tool support, or the
        call was compacted away) are sent as plain user text.
        """
        payload: list[dict[str, Any]] = [{"role": "system", "content": self._system_prompt}]
        native = self.model.supports_tools
        open_calls: set[str] = set()
        for message in self.messages:
            if message.role == "tool" and (not native or message.tool_call_id not in open_calls):
                payload.append({"role": "user", "content": f"Tool result ({message.name}):\n{message.content}"})
            elif message.role == "assistant" and not native:
                payload.append({"role": "assistant", "content": message.content})
            else:
                open_calls.update(call.id for call in message.tool_calls if call.id)
                payload.append(message.to_payload())
        return payload

    def _extract_calls(self, response: ModelResponse, iteration: int) -> list[ToolCall]:
        calls = list(response.tool_calls)
        if not calls and response.content:
            calls = self.parser.parse(response.content)
            if calls:
                logger.debug("Recovered %s call(s) from text (tier %s).", len(calls), self.parser.last_tier)
            elif any(marker in response.content for marker in _CALL_ATTEMPT_MARKERS):
                self._fail(FailureTag.PARSE_ERROR, "unreadable tool call in model reply")
        return [
            call if call.id else call.model_copy(update={"id": f"call_{iteration}_{index}"})
            for index, call in enumerate(calls)
        ]

    def _handle_answer(self, content: str, iteration: int) -> AgentResult | None:
        self._no_tool_turns += 1
        text = content.strip()
        if text:
            self._append(Message(role="assistant", content=text))
        if not is_generic(text):
            if self._claims_completion(text):
                verdict = self.oracle.verify_with_model(
                    self.model, self.state, self._payload(), timeout=self.remaining_seconds()
                )
                if not verdict.complete:
                    logger.info("Model claimed completion but verification disagreed.")
                    self.nudge(
                        "The task is not finished yet. "
                        + (f"{verdict.summary} " if verdict.summary else "")
                        + "Continue with the next step using a tool."
                    )
                    return None
            self.state.add_step(ReasoningStep(thought=text, next_phase=Phase.COMPLETE))
            return self._finish(TerminationReason.FINAL_ANSWER, text)
        if self._no_tool_turns >= self.policy.max_no_tool_turns:
            self._no_tool_turns = 0
            self.nudge(framework_guidance(self.state.task))
            return None
        if iteration <= self.policy.nudge_iterations:
            self.nudge(ACT_NUDGE if self.tools_used else EXPLORE_NUDGE)
            return None
        verdict = self.oracle.check(self.state)
        if verdict.complete:
            return self._finish(TerminationReason.ORACLE_COMPLETE, verdict.summary)
        return self._finish(TerminationReason.FINAL_ANSWER, text)

    def _claims_completion(self, text: str) -> bool:
        lowered = text.lower()
        return implies_mutation(self.state.task) and any(claim in lowered for claim in COMPLETION_CLAIMS)

    def _dispatch(self, call: ToolCall, thought: str) -> None:
        if self.trace:
            self.trace.record_tool_call(call)
        effects = self.executor.effects(call)
        result = self.executor.execute(call)
        self.tools_used.append(call.name)
        self.loop_detector.record(call, read_only=effects.read_only, mutating=effects.mutating)
        self._notify(self.callbacks.on_tool_execution, call, result)

        command = _setup_command(call)
        soft_success = not result.success and command is not None and _already_exists(result)
        if soft_success:
            logger.info("Treating '%s' as already done.", command)
            observation = SOFT_SUCCESS_OBSERVATION.format(target=_command_target(command))
        else:
            observation = result.observation()

        if call.name in TEST_TOOLS:
            passed, failed = count_passed_tests(result.content)
            self.state.tests_run += passed + failed
            self.state.tests_passed += passed
        error_key = _error_key(call, effects.read + effects.modified)
        if result.success or soft_success:
            self._consecutive_failures = 0
            self.state.files_read.update(effects.read)
            self.state.files_modified.update(effects.modified)
            self.state.clear_errors_for(error_key)
            if result.success and call.name == "write_todos":
                self.state.todos = WriteTodosInput.model_validate(call.arguments).todos
        else:
            self._consecutive_failures += 1
            self.state.record_error(f"{call.name}: {result.error}", key=error_key)
            self._fail(FailureTag.TOOL_ERROR, result.error or "", {"tool": call.name})

        eviction = self.compactor.evict(call.name, observation)
        if eviction.fallback:
            self._fail(FailureTag.COMPACTION_FALLBACK, f"could not store large {call.name} result")
        content = self.compactor.clip(eviction.content)
        if self.trace:
            self.trace.record_tool_result(call.name, result.success, content)
        self.state.add_step(
            ReasoningStep(
                thought=thought[:500],
                action=call,
                observation=content[:500],
                next_phase=Phase.THINK,
                success=result.success or soft_success,
            )
        )
        self._append(Message(role="tool", content=content, tool_call_id=call.id, name=call.name))
        if soft_success:
            self.nudge(next_step_hint(command or ""))

    def _compact(self) -> None:
        outcome = self.compactor.compact(self.messages)
        if not outcome.compacted:
            return
        self.messages = outcome.messages
        if outcome.fallback:
            self._fail(FailureTag.COMPACTION_FALLBACK, f"dropped {outcome.collapsed} messages without a summary")
        self._notify(self.callbacks.on_progress, f"Compacted {outcome.collapsed} earlier messages")

    def _append(self, message: Message) -> None:
        self.messages.append(message)
        if self.trace:
            self.trace.record_message(message.role, message.content)
        self._notify(self.callbacks.on_message, message)

    def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Callback %s raised %s: %s", getattr(callback, "__name__", callback), type(exc).__name__, exc)

    def _fail(self, tag: FailureTag, reason: str, details: dict[str, Any] | None = None) -> None:
        event = FailureEvent(tag=tag, reason=reason, details=details)
        self.failures.append(event)
        if self.trace:
            self.trace.record_failure(event)

    def remaining_seconds(self) -> float:
        return self._deadline - self.clock()

    def _timeout(self) -> AgentResult:
        limit = self.policy.max_runtime_seconds
        message = f"Stopped: the run exceeded its time limit of {limit:g} seconds."
        self._fail(FailureTag.TIMEOUT, message)
        return self._finish(TerminationReason.TIMEOUT, message)

    def _last_answer(self) -> str:
        for message in reversed(self.messages):
            if message.role == "assistant" and message.content.strip() and not message.tool_calls:
                return message.content
        return f"Stopped after {self.iterations} iterations without a final answer."

    def _finish(self, reason: TerminationReason, answer: str) -> AgentResult:
        result = AgentResult(
            answer=answer,
            reason=reason,
            iterations=self.iterations,
            tools_used=list(self.tools_used),
            files_read=sorted(self.state.files_read),
            files_modified=sorted(self.state.files_modified),
            errors=list(self.state.errors),
            failures=list(self.failures),
            messages=list(self.messages),
        )
        result.report = build_report(self.state, result)
        if self.trace:
            result.trace_path = self.trace.finalize(
                {
                    "reason": reason.value,
                    "iterations": self.iterations,
                    "tool_calls": len(self.tools_used),
                    "failures": [event.tag.value for event in self.failures],
                }
            )
        logger.info("Agent run finished (%s) after %s iteration(s).", reason.value, self.iterations)
        self._notify(self.callbacks.on_progress, f"Finished: {reason.value}")
        return result


def _error_key(call: ToolCall, paths: list[str]) -> str:
    """File tools share a key per path; everything else is keyed by the exact action."""
    if paths:
        return "path:" + ",".join(sorted(paths))
    return action_key(call)


def _setup_command(call: ToolCall) -> str | None:
    command = call.arguments.get("command")
    if not isinstance(command, str):
        return None
    lowered = command.lower()
    return command if any(marker in lowered for marker in SETUP_COMMAND_MARKERS) else None


def _already_exists(result: ToolResult) -> bool:
    text = f"{result.error or ''}\n{result.content}".lower()
    return any(pattern in text for pattern in ALREADY_EXISTS_PATTERNS)


def _command_target(command: str) -> str:
    for token in reversed(command.split()):
        if not token.startswith("-"):
            return token
    return command
