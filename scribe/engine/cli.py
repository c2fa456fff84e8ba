"""CLI entry point: run one prompt against a project directory.

Usage:
    scribe "Add a dark mode toggle to the header"
    scribe --project-dir ./site --model openrouter/anthropic/claude-sonnet-4 "Fix the build"
    scribe --prompt-file tasks/refactor.md --max-steps 10 --config scribe.yaml
    scribe --resume "Now add tests for it"
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

from scribe.adapters.events import EventKind, FileChanged, MessageAdded, StreamingUpdate

from .errors import ConfigError
from .models import GenerationOutcome, LoopState
from .session_registry import build_registry


class _StreamPrinter:
    """Writes only the new suffix of each cumulative streaming update."""

    def __init__(self, out=None) -> None:
        self._out = out or sys.stdout
        self._printed: dict[str, int] = {}
        self._tool_calls: dict[str, int] = {}

    def on_message(self, event: MessageAdded) -> None:
        if event.streaming and event.message is not None:
            self._printed[event.message.id] = 0
            self._tool_calls[event.message.id] = 0

    def on_update(self, event: StreamingUpdate) -> None:
        seen = self._printed.get(event.message_id, 0)
        if len(event.content) > seen:
            self._out.write(event.content[seen:])
            self._printed[event.message_id] = len(event.content)
        calls_seen = self._tool_calls.get(event.message_id, 0)
        for call in event.tool_calls[calls_seen:]:
            self._out.write(f"\n[tool] {call.name}\n")
        self._tool_calls[event.message_id] = len(event.tool_calls)
        self._out.flush()


def _on_file_changed(event: FileChanged) -> None:
    print(f"[{event.change_type}] {event.file_path}", file=sys.stderr)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="scribe",
        description="Run an AI coding session against a project directory",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="The message to send (inline string)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the message from a file (.md, .txt, etc.)",
    )
    parser.add_argument(
        "--project-dir", "-C",
        default=".",
        help="Project directory the tools operate in (default: current dir)",
    )
    parser.add_argument(
        "--project-id",
        default=None,
        help="Project identifier (default: project directory name)",
    )
    parser.add_argument(
        "--model", "-m",
        default=None,
        help="provider/model to use (default: from config)",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=None,
        help="Maximum provider round-trips (default: from config)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the project's most recent session",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    prompt = _resolve_prompt(args.prompt, args.prompt_file)
    try:
        code = asyncio.run(_run(args, prompt))
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    sys.exit(code)


async def _run(args: argparse.Namespace, prompt: str) -> int:
    registry = build_registry(args.config)
    project_dir = Path(args.project_dir).expanduser().resolve()
    project_id = args.project_id or project_dir.name

    overrides = {"project_name": project_dir.name, "project_dir": project_dir}
    if args.max_steps is not None:
        overrides["max_steps"] = args.max_steps
    config = registry.new_session_config(project_id, **overrides)
    if args.resume:
        session = registry.get_or_create_project_session(config)
    else:
        session = registry.get_session(registry.create_session(config))

    printer = _StreamPrinter()
    registry.bus.on(EventKind.MESSAGE_ADDED, printer.on_message)
    registry.bus.on(EventKind.STREAMING_UPDATE, printer.on_update)
    registry.bus.on(EventKind.FILE_CHANGED, _on_file_changed)

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, registry.stop_generation, session.id)

    try:
        outcome = await registry.send_message(session.id, prompt, args.model)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await registry.shutdown()
    print()
    return _report(outcome)


def _report(outcome: GenerationOutcome | None) -> int:
    if outcome is None:
        print("Error: the session is busy or has nothing to send.", file=sys.stderr)
        return 1
    summary = f"{outcome.state.value}: {outcome.steps} step(s), {outcome.tool_calls} tool call(s)"
    if outcome.budget_exhausted:
        summary += " (step budget exhausted)"
    print(summary, file=sys.stderr)
    return 1 if outcome.state == LoopState.ERROR else 0


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from an inline arg or a file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a prompt or --prompt-file, not both.")
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Prompt file not found: {file_path}")
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a prompt or --prompt-file.")
    sys.exit(1)


if __name__ == "__main__":
    main()
