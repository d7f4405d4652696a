"""Subprocess helpers for shell-backed tools."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path


@dataclass
class SandboxCommandResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def run_shell(
    command: str,
    cwd: Path,
    env: dict[str, str] | None = None,
    timeout_seconds: int = 120,
) -> SandboxCommandResult:
    """Run a shell command line in a subprocess with a scrubbed environment."""
    safe_env = sanitize_env(env if env is not None else dict(os.environ))
    try:
        process = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            cwd=cwd,
            env=safe_env,
        )
    except subprocess.TimeoutExpired as exc:
        return SandboxCommandResult(
            stdout=_as_text(exc.stdout),
            stderr=_as_text(exc.stderr) or f"Command timed out after {timeout_seconds}s",
            exit_code=-1,
            timed_out=True,
        )
    return SandboxCommandResult(
        stdout=process.stdout or "",
        stderr=process.stderr or "",
        exit_code=process.returncode,
    )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def sanitize_env(env: dict[str, str]) -> dict[str, str]:
    """Return a sanitized environment for subprocesses."""
    allowlist = {
        "PATH",
        "PYTHONPATH",
        "HOME",
        "TMPDIR",
        "USER",
        "LANG",
        "LC_ALL",
        "SHELL",
        "TERM",
        "VIRTUAL_ENV",
        "NODE_PATH",
        "GOPATH",
        "CARGO_HOME",
    }
    allowlist.update(_parse_passthrough_env())
    filtered: dict[str, str] = {}
    for key, value in env.items():
        if _is_sensitive_key(key):
            continue
        if key in allowlist:
            filtered[key] = value
    return filtered


def _parse_passthrough_env() -> set[str]:
    raw = os.environ.get("CODELOOP_PASSTHROUGH_ENV", "")
    if not raw:
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def _is_sensitive_key(key: str) -> bool:
    upper = key.upper()
    prefixes = ("OPENAI_", "API_KEY", "TOKEN", "SECRET", "CODELOOP_API_KEY")
    return upper.startswith(prefixes) or upper.endswith(("_TOKEN", "_SECRET", "_API_KEY"))
