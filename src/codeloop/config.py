"""Configuration settings for codeloop."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or overrides."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, populate_by_name=True
    )

    backend: str = Field(default="ollama", validation_alias="CODELOOP_BACKEND")
    base_url: str = Field(
        default="http://localhost:11434", validation_alias="CODELOOP_BASE_URL"
    )
    model: str = Field(default="qwen2.5-coder:7b", validation_alias="CODELOOP_MODEL")
    api_key: str | None = Field(default=None, validation_alias="CODELOOP_API_KEY")
    request_timeout_seconds: int = Field(
        default=120, validation_alias="CODELOOP_REQUEST_TIMEOUT_SECONDS"
    )
    temperature: float = Field(default=0.7, validation_alias="CODELOOP_TEMPERATURE")
    native_tools: bool | None = Field(default=None, validation_alias="CODELOOP_NATIVE_TOOLS")
    workspace_dir: str = Field(default=".", validation_alias="CODELOOP_WORKSPACE")
    command_timeout_seconds: int = Field(
        default=120, validation_alias="CODELOOP_COMMAND_TIMEOUT_SECONDS"
    )

    max_iterations: int = Field(default=50, validation_alias="CODELOOP_MAX_ITERATIONS")
    max_runtime_seconds: int = Field(
        default=600, validation_alias="CODELOOP_MAX_RUNTIME_SECONDS"
    )
    max_consecutive_failures: int = Field(
        default=3, validation_alias="CODELOOP_MAX_CONSECUTIVE_FAILURES"
    )
    nudge_iterations: int = Field(default=2, validation_alias="CODELOOP_NUDGE_ITERATIONS")
    completion_check_interval: int = Field(
        default=5, validation_alias="CODELOOP_COMPLETION_CHECK_INTERVAL"
    )
    loop_window: int = Field(default=10, validation_alias="CODELOOP_LOOP_WINDOW")
    loop_repeat_threshold: int = Field(
        default=4, validation_alias="CODELOOP_LOOP_REPEAT_THRESHOLD"
    )
    compaction_threshold: int = Field(
        default=50, validation_alias="CODELOOP_COMPACTION_THRESHOLD"
    )
    compaction_keep_recent: int = Field(
        default=6, validation_alias="CODELOOP_COMPACTION_KEEP_RECENT"
    )
    eviction_threshold_chars: int = Field(
        default=50_000, validation_alias="CODELOOP_EVICTION_THRESHOLD_CHARS"
    )
    eviction_preview_chars: int = Field(
        default=1_000, validation_alias="CODELOOP_EVICTION_PREVIEW_CHARS"
    )
    max_message_chars: int = Field(
        default=20_000, validation_alias="CODELOOP_MAX_MESSAGE_CHARS"
    )
    subagent_max_result_chars: int = Field(
        default=2_000, validation_alias="CODELOOP_SUBAGENT_MAX_RESULT_CHARS"
    )
    subagents_file: str | None = Field(default=None, validation_alias="CODELOOP_SUBAGENTS")
    log_level: str = Field(default="INFO", validation_alias="CODELOOP_LOG_LEVEL")


DEFAULT_SETTINGS = Settings()
