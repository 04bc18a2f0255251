import argparse
import json
import sys
from typing import Optional, Sequence

from .config import MappingStore
from .discovery import discover
from .executor import run_real
from .hooks import (
    FILE_KINDS,
    SESSION_START,
    SESSION_STOP,
    SHELL_COMMAND,
    TOOL_OUTPUT,
    HookEngine,
    HookEvent,
    decode_event,
    encode_response,
)
from .placeholders import generator_for
from .substitution import apply, apply_with_fallback
from .utils import SanitizerError, audit


HOOK_KINDS = {
    "hook-file-access": FILE_KINDS,
    "hook-bash": (SHELL_COMMAND,),
    "hook-post": (TOOL_OUTPUT,),
}
SESSION_KINDS = {
    "hook-session-start": SESSION_START,
    "hook-session-stop": SESSION_STOP,
}


def _read_stdin() -> str:
    return sys.stdin.read()


def _read_optional_stdin() -> str:
    try:
        if sys.stdin is None or sys.stdin.isatty():
            return ""
    except (AttributeError, ValueError):
        return ""
    return sys.stdin.read()


def _emit(response):
    if response is not None:
        sys.stdout.write(json.dumps(response))
        sys.stdout.flush()


def run_sanitize_filter(fallback: bool = False, store: Optional[MappingStore] = None) -> int:
    """Pipe filter: stdin -> discover, persist and substitute -> stdout."""
    store = store or MappingStore()
    text = _read_stdin()
    config = store.load()
    discovered = discover(text, config, generator_for(config.placeholder_policy))
    if discovered:
        config = store.save_discovered(config, discovered)
    mapping = config.mappings.all()
    sys.stdout.write(apply_with_fallback(text, mapping) if fallback else apply(text, mapping))
    sys.stdout.flush()
    return 0


def run_hook(command: str, engine: Optional[HookEngine] = None) -> int:
    """Handle one hook envelope. Always exits 0 so the host flow is never blocked by an error."""
    try:
        event = decode_event(_read_stdin())
    except ValueError as exc:
        print(f"{command} error: invalid hook input ({exc})", file=sys.stderr)
        return 0

    if event.kind not in HOOK_KINDS[command]:
        return 0

    engine = engine or HookEngine()
    decision = engine.handle(event)
    if decision.verdict == "error":
        print(f"{command} error: {decision.reason}", file=sys.stderr)
        return 0
    _emit(encode_response(decision, event))
    return 0


def run_session_hook(command: str, engine: Optional[HookEngine] = None) -> int:
    kind = SESSION_KINDS[command]
    cwd = ""
    try:
        raw = _read_optional_stdin()
        if raw.strip():
            cwd = decode_event(raw).cwd
    except ValueError:
        cwd = ""

    engine = engine or HookEngine()
    decision = engine.handle(HookEvent(kind=kind, cwd=cwd))
    if decision.verdict == "error":
        print(f"{command} error: {decision.reason}", file=sys.stderr)
    return 0


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sanitizer",
        description="Keep real infrastructure values out of an AI assistant's view of a project.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    filter_parser = sub.add_parser("sanitize-ips", help="Sanitize stdin to stdout using the stored mappings.")
    filter_parser.add_argument(
        "--fallback",
        action="store_true",
        help="Also replace any IPv4 address not covered by the mappings.",
    )

    sub.add_parser("hook-file-access", help="PreToolUse hook for Read/Edit/Write.")
    sub.add_parser("hook-bash", help="PreToolUse hook for Bash.")
    sub.add_parser("hook-post", help="PostToolUse hook that sanitizes tool output.")
    sub.add_parser("hook-session-start", help="Sanitize the whole project at session start.")
    sub.add_parser("hook-session-stop", help="Restore real values into the shadow tree.")

    exec_parser = sub.add_parser("exec", help="Run a command in the shadow tree with real values.")
    exec_parser.add_argument("cmd", help="Command text, as written against placeholder values.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    if args.command in HOOK_KINDS:
        return run_hook(args.command)

    if args.command in SESSION_KINDS:
        return run_session_hook(args.command)

    try:
        if args.command == "sanitize-ips":
            return run_sanitize_filter(fallback=bool(args.fallback))
        if args.command == "exec":
            return run_real(args.cmd)
    except (SanitizerError, OSError) as exc:
        audit(args.command.upper(), str(exc), "ERROR")
        print(f"{args.command} error: {exc}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
