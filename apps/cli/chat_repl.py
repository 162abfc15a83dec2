from __future__ import annotations

import atexit
import shlex
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback

from pocketlm.engine.errors import ContextWindowExceeded, PocketLMError


def _chat_history_file_path() -> Path:
    return Path.home() / ".config" / "pocketlm" / "chat_history"


def _setup_readline_history() -> None:
    """Set up persistent command history for the REPL."""
    if readline is None:
        return
    history_file = _chat_history_file_path()
    history_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_file)
    except FileNotFoundError:
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, history_file)


# Commands for tab completion
_CHAT_COMMANDS = ["/help", "/exit", "/clear", "/stats", "/system"]


def _setup_completer() -> None:
    """Set up tab completion for REPL commands."""
    if readline is None:
        return

    def completer(text: str, state: int) -> str | None:
        if text.startswith("/"):
            matches = [cmd for cmd in _CHAT_COMMANDS if cmd.startswith(text)]
        else:
            matches = []
        return matches[state] if state < len(matches) else None

    readline.set_completer(completer)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")


@dataclass
class TurnStats:
    tok_per_s: float | None = None
    context_used: int | None = None
    context_size: int | None = None
    total_s: float | None = None


def _format_metrics(stats: TurnStats) -> str:
    parts: list[str] = []
    if stats.tok_per_s is not None:
        parts.append(f"tok/s={stats.tok_per_s:.2f}")
    if stats.context_used is not None and stats.context_size is not None:
        parts.append(f"context={stats.context_used}/{stats.context_size}")
    if stats.total_s is not None:
        parts.append(f"wall={stats.total_s:.3f}s")
    return " ".join(parts)


def _cmd_help() -> None:
    print(
        "\n".join(
            [
                "commands:",
                "  /help",
                "  /exit           exit",
                "  /clear          start a fresh session (drops history)",
                "  /stats          show last turn metrics",
                "  /system <text>  add a system prompt to the history",
            ]
        )
    )


def _stream_chat_turn(session: Any, text: str) -> TurnStats:
    started = time.monotonic()
    try:
        for piece in session.stream_response(text):
            print(piece, end="", flush=True)
    except KeyboardInterrupt:
        print("^C", end="")
    finally:
        print()
    return TurnStats(
        tok_per_s=session.response_generation_speed,
        context_used=session.context_size_used,
        context_size=session.context_size,
        total_s=time.monotonic() - started,
    )


def chat_repl(
    *,
    session_factory: Callable[[], Any],
    system_prompt: str | None = None,
    model_label: str = "",
) -> int:
    """Interactive chat over a local session. Returns a process exit code."""
    _setup_readline_history()
    _setup_completer()

    try:
        session = session_factory()
    except PocketLMError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if system_prompt:
        session.add_system_prompt(system_prompt)

    print(f"model={model_label}" if model_label else "model loaded")
    print("type /help for commands")

    last_stats: TurnStats | None = None
    try:
        while True:
            try:
                raw = input("pocketlm> ")
            except EOFError:
                print()
                return 0
            except KeyboardInterrupt:
                print("^C")
                continue

            line = raw.strip()
            if not line:
                continue

            if line.startswith("/"):
                try:
                    parts = shlex.split(line[1:])
                except ValueError as exc:
                    print(f"parse error: {exc}", file=sys.stderr)
                    continue
                if not parts:
                    continue
                cmd, args = parts[0], parts[1:]

                if cmd in {"exit", "quit"}:
                    return 0
                if cmd == "help":
                    _cmd_help()
                    continue
                if cmd == "clear":
                    session.close()
                    session = session_factory()
                    if system_prompt:
                        session.add_system_prompt(system_prompt)
                    last_stats = None
                    print("started a fresh session")
                    continue
                if cmd == "stats":
                    if last_stats is None:
                        print("(no turns yet)")
                    else:
                        print(_format_metrics(last_stats))
                    continue
                if cmd == "system":
                    if not args:
                        print("usage: /system <text>", file=sys.stderr)
                        continue
                    session.add_system_prompt(" ".join(args))
                    continue
                print(f"unknown command: /{cmd} (try /help)", file=sys.stderr)
                continue

            try:
                last_stats = _stream_chat_turn(session, line)
            except ContextWindowExceeded as exc:
                print(f"error: {exc}. Use /clear to start over.", file=sys.stderr)
            except PocketLMError as exc:
                print(f"error: {exc}", file=sys.stderr)
                return 1
    finally:
        session.close()
