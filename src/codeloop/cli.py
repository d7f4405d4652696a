"""Command-line interface."""

from __future__ import annotations

import argparse
import sys
from typing import Any, Sequence
from uuid import uuid4

from codeloop.agent import RunCallbacks
from codeloop.config import Settings
from codeloop.factory import BACKENDS, build_agent, build_model
from codeloop.models.errors import ModelTransportError
from codeloop.models.ollama import OllamaChatModel
from codeloop.state import Message
from codeloop.trace import TraceRecorder
from codeloop.util.logging import configure_logging


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="codeloop: autonomous coding agent")
    parser.add_argument("task", nargs="?", type=str, help="Task to carry out in the workspace")
    parser.add_argument("--workspace", dest="workspace")
    parser.add_argument("--backend", choices=BACKENDS, dest="backend")
    parser.add_argument("--base-url", dest="base_url")
    parser.add_argument("--model", dest="model")
    parser.add_argument("--api-key", dest="api_key")
    parser.add_argument("--max-iterations", type=int, dest="max_iterations")
    parser.add_argument("--timeout", type=int, dest="timeout", help="Wall-clock limit for the run in seconds")
    parser.add_argument("--subagents", dest="subagents", help="YAML or JSON file with subagent descriptors")
    parser.add_argument("--system-prompt", dest="system_prompt")
    parser.add_argument("--trace", action="store_true", dest="trace")
    parser.add_argument("--list-models", action="store_true", dest="list_models")
    parser.add_argument("--log-level", dest="log_level")
    return parser.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    data: dict[str, Any] = settings.model_dump()
    if args.workspace:
        data["workspace_dir"] = args.workspace
    if args.backend:
        data["backend"] = args.backend
    if args.base_url:
        data["base_url"] = args.base_url
    if args.model:
        data["model"] = args.model
    if args.api_key:
        data["api_key"] = args.api_key
    if args.max_iterations:
        data["max_iterations"] = args.max_iterations
    if args.timeout:
        data["max_runtime_seconds"] = args.timeout
    if args.subagents:
        data["subagents_file"] = args.subagents
    if args.log_level:
        data["log_level"] = args.log_level
    return Settings(**data)


def _print_message(message: Message) -> None:
    if message.role == "assistant" and message.content.strip():
        print(f"\n[assistant] {message.content.strip()}")
    elif message.role == "tool":
        preview = message.content if len(message.content) <= 400 else message.content[:400] + " ..."
        print(f"[{message.name}] {preview}")


def _print_progress(text: str) -> None:
    print(f"-- {text}", file=sys.stderr)


def list_models(settings: Settings) -> int:
    if settings.backend != "ollama":
        print("--list-models is only available for the ollama backend.", file=sys.stderr)
        return 2
    client = OllamaChatModel(base_url=settings.base_url, model=settings.model)
    try:
        names = client.list_models()
    except ModelTransportError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    for name in names:
        print(name)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = apply_overrides(Settings(), args)
    configure_logging(settings.log_level)
    if args.list_models:
        return list_models(settings)
    if not args.task:
        print("A task is required unless --list-models is given.", file=sys.stderr)
        return 2
    trace = TraceRecorder(trace_id=uuid4().hex[:12], workspace_dir=settings.workspace_dir) if args.trace else None
    try:
        agent = build_agent(settings, build_model(settings), trace=trace)
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    result = agent.orchestrate(
        args.task,
        system_prompt=args.system_prompt,
        callbacks=RunCallbacks(on_progress=_print_progress, on_message=_print_message),
    )
    print("\n" + result.report)
    if result.trace_path:
        print("Trace:", result.trace_path)
    print("Answer:\n", result.answer)
    return 0 if result.completed else 1


if __name__ == "__main__":
    sys.exit(main())
