"""Tunable limits for a single agent run."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class AgentPolicy:
    max_iterations: int = 50
    max_runtime_seconds: float = 600.0
    max_consecutive_failures: int = 3
    nudge_iterations: int = 2
    max_no_tool_turns: int = 3
    completion_check_interval: int = 5
    loop_window: int = 10
    loop_repeat_threshold: int = 4
    stall_read_threshold: int = 6
    compaction_threshold: int = 50
    compaction_keep_recent: int = 6
    eviction_threshold_chars: int = 50_000
    eviction_preview_chars: int = 1_000
    max_message_chars: int = 20_000
    subagent_max_result_chars: int = 2_000
    subagent_max_depth: int = 1
    allow_tools: list[str] | None = None
