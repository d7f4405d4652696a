"""Logging helpers with secret redaction."""

from __future__ import annotations

import logging
import re
from typing import Iterable

_REDACTIONS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_.]+"), "Bearer [REDACTED]"),
    (re.compile(r"sk-[A-Za-z0-9]{8,}"), "[REDACTED]"),
    (re.compile(r"(?i)(api[_-]?key|token|password)(\s*[=:]\s*)[^\s\"',]+"), r"\1\2[REDACTED]"),
]
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_ROOT = "codeloop"


def redact(text: str, extra_secrets: Iterable[str] | None = None) -> str:
    """Redact known secret patterns and explicit secrets from text."""
    redacted = text
    for pattern, replacement in _REDACTIONS:
        redacted = pattern.sub(replacement, redacted)
    if extra_secrets:
        for secret in extra_secrets:
            if secret:
                redacted = redacted.replace(secret, "[REDACTED]")
    return redacted


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package hierarchy.

    The handler lives on the package root logger so that every module shares
    one stream and one level.
    """
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return logging.getLogger(name)


def configure_logging(level: str | int) -> None:
    """Set the package log level (name such as ``"DEBUG"`` or a number)."""
    get_logger(_ROOT)
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    else:
        resolved = level
    logging.getLogger(_ROOT).setLevel(resolved)
