import json
import os
import re
import shlex
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import MappingStore, SanitizerConfig, initialize_config, shadow_root
from .discovery import discover
from .placeholders import PlaceholderGenerator, generator_for
from .substitution import apply, reverse_apply
from .sync import iter_project_files, project_entry, read_text, sync_tree, write_text
from .utils import audit, sanitizer_dir


# Event kinds
FILE_READ = "file_read"
FILE_WRITE = "file_write"
FILE_EDIT = "file_edit"
SHELL_COMMAND = "shell_command"
TOOL_OUTPUT = "tool_output"
SESSION_START = "session_start"
SESSION_STOP = "session_stop"
UNKNOWN = "unknown"

FILE_KINDS = (FILE_READ, FILE_WRITE, FILE_EDIT)

_TOOL_KINDS = {
    "read": FILE_READ,
    "write": FILE_WRITE,
    "edit": FILE_EDIT,
    "multiedit": FILE_EDIT,
    "bash": SHELL_COMMAND,
}

REAL_EXEC_PATTERNS = (
    r"^\s*powershell",
    r"^\s*pwsh",
    r"\.ps1(\s|$|\")",
    r"^\s*&\s",
    r"^\s*ansible\b",
    r"^\s*awx\b",
)


@dataclass(frozen=True)
class HookEvent:
    kind: str
    hook_event_name: str = ""
    tool_name: str = ""
    path: str = ""
    content: str = ""
    new_string: str = ""
    command: str = ""
    output: str = ""
    cwd: str = ""
    tool_input: dict = field(default_factory=dict)

    def project_root(self) -> Path:
        return Path(self.cwd or os.getcwd()).resolve()


def _text(value):
    return value if isinstance(value, str) else ""


def _classify(hook_event_name, tool_name, tool_input):
    if hook_event_name == "PreToolUse":
        kind = _TOOL_KINDS.get(tool_name.strip().lower())
        if kind:
            return kind
        if _text(tool_input.get("command")):
            return SHELL_COMMAND
        if _text(tool_input.get("file_path")):
            return FILE_WRITE if "content" in tool_input else FILE_READ
        return UNKNOWN
    if hook_event_name == "PostToolUse":
        return TOOL_OUTPUT
    if hook_event_name == "SessionStart":
        return SESSION_START
    if hook_event_name in ("Stop", "SessionEnd"):
        return SESSION_STOP
    return UNKNOWN


def decode_event(raw) -> HookEvent:
    """Decode one hook envelope. Raises ValueError on malformed input."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8-sig")
    payload = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(payload, dict):
        raise ValueError("Hook envelope must be a JSON object.")

    hook_event_name = _text(payload.get("hook_event_name"))
    tool_name = _text(payload.get("tool_name"))
    tool_input = payload.get("tool_input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    output = payload.get("tool_output")
    if not isinstance(output, str):
        output = payload.get("tool_response")

    return HookEvent(
        kind=_classify(hook_event_name, tool_name, tool_input),
        hook_event_name=hook_event_name,
        tool_name=tool_name,
        path=_text(tool_input.get("file_path")),
        content=_text(tool_input.get("content")),
        new_string=_text(tool_input.get("new_string")),
        command=_text(tool_input.get("command")),
        output=_text(output),
        cwd=_text(payload.get("cwd")),
        tool_input=dict(tool_input),
    )


@dataclass(frozen=True)
class Decision:
    verdict: str  # allow | deny | error
    reason: str = ""
    updated_input: Optional[dict] = None
    updated_output: Optional[str] = None

    @classmethod
    def allow(cls):
        return cls("allow")

    @classmethod
    def deny(cls, reason):
        return cls("deny", reason=str(reason))

    @classmethod
    def modify_input(cls, updated_input):
        return cls("allow", updated_input=dict(updated_input))

    @classmethod
    def replace_output(cls, output):
        return cls("allow", updated_output=output)

    @classmethod
    def error(cls, reason):
        return cls("error", reason=str(reason))


def encode_response(decision: Decision, event: HookEvent) -> Optional[dict]:
    """Hook response envelope, or None when the operation proceeds unchanged."""
    if decision.verdict == "deny":
        return {
            "hookSpecificOutput": {
                "hookEventName": event.hook_event_name or "PreToolUse",
                "permissionDecision": "deny",
                "permissionDecisionReason": decision.reason,
            }
        }
    if decision.verdict != "allow":
        return None
    if decision.updated_input is not None:
        return {
            "hookSpecificOutput": {
                "hookEventName": event.hook_event_name or "PreToolUse",
                "permissionDecision": "allow",
                "updatedInput": decision.updated_input,
            }
        }
    if decision.updated_output is not None:
        return {
            "hookSpecificOutput": {
                "hookEventName": event.hook_event_name or "PostToolUse",
                "updatedOutput": decision.updated_output,
            }
        }
    return None


def _compile_all(patterns, flags=re.IGNORECASE):
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, flags))
        except re.error as exc:
            audit("RULES", f"Invalid pattern {pattern!r}: {exc}", "WARNING")
    return tuple(compiled)


def _slash(path) -> str:
    return str(path).replace("\\", "/")


def _default_wrapper() -> tuple:
    found = shutil.which("sanitizer")
    if found:
        return (found,)
    return (sys.executable, "-m", "sanitizer")


@dataclass(frozen=True)
class HookRules:
    """Pattern tables used to classify operations; all paths are matched with '/' separators."""

    protected_paths: tuple = ()
    blocked_commands: tuple = ()
    real_exec_commands: tuple = ()
    wrapper: tuple = ("sanitizer",)

    @classmethod
    def build(cls, config_file, protected_dirs=(), real_exec_patterns=(), wrapper=None):
        config_file = Path(config_file)
        dirs = [_slash(d).rstrip("/") for d in protected_dirs if str(d).strip()]
        config_pattern = re.escape(_slash(config_file)) + r"(\.lock)?$"

        protected = [r"\.claude/sanitizer/", r"\.claude/unsanitized/", config_pattern]
        protected += [re.escape(d) + r"(/|$)" for d in dirs]
        blocked = [
            r"(?<![\w.-])" + re.escape(config_file.name) + r"(?![\w-])",
            r"\.claude/sanitizer(?![\w-])",
            r"\.claude/unsanitized",
        ]
        blocked += [re.escape(d) + r"(?![\w-])" for d in dirs]

        return cls(
            protected_paths=_compile_all(protected),
            blocked_commands=_compile_all(blocked),
            real_exec_commands=_compile_all(tuple(REAL_EXEC_PATTERNS) + tuple(real_exec_patterns)),
            wrapper=tuple(wrapper) if wrapper else _default_wrapper(),
        )

    def is_protected_path(self, path) -> bool:
        normalized = _slash(path)
        return any(p.search(normalized) for p in self.protected_paths)

    def is_blocked_command(self, command) -> bool:
        normalized = _slash(command)
        return any(p.search(normalized) for p in self.blocked_commands)

    def needs_real_execution(self, command) -> bool:
        return any(p.search(command) for p in self.real_exec_commands)

    def wrap_command(self, command) -> str:
        """Route ``command`` through the real-execution wrapper, quoted for a POSIX shell."""
        prefix = " ".join(shlex.quote(part) for part in self.wrapper)
        return f"{prefix} exec {shlex.quote(command)}"


class HookEngine:
    """Classifies one intercepted operation at a time into a Decision."""

    def __init__(self, store: Optional[MappingStore] = None, rules: Optional[HookRules] = None,
                 generator: Optional[PlaceholderGenerator] = None):
        self.store = store or MappingStore()
        self._rules = rules
        self._generator = generator

    def rules_for(self, config: SanitizerConfig, project_root: Path) -> HookRules:
        if self._rules is not None:
            return self._rules
        return HookRules.build(
            self.store.path,
            protected_dirs=(sanitizer_dir(), shadow_root(), config.expand_shadow_path(project_root.name)),
            real_exec_patterns=config.real_exec_patterns,
        )

    def _generator_for(self, config):
        return self._generator or generator_for(config.placeholder_policy)

    def handle(self, event: HookEvent) -> Decision:
        """Never raises: internal failures come back as an ``error`` decision."""
        handlers = {
            FILE_READ: self._file_access,
            FILE_WRITE: self._file_access,
            FILE_EDIT: self._file_access,
            SHELL_COMMAND: self._shell_command,
            TOOL_OUTPUT: self._tool_output,
            SESSION_START: self.session_start,
            SESSION_STOP: self.session_stop,
        }
        handler = handlers.get(event.kind)
        if handler is None:
            return Decision.allow()
        try:
            return handler(event)
        except Exception as exc:
            audit(event.kind.upper(), f"{type(exc).__name__}: {exc}", "ERROR")
            return Decision.error(exc)

    def sanitize_text(self, config: SanitizerConfig, text):
        """Discover, persist and substitute. Returns (updated config, sanitized text)."""
        discovered = discover(text, config, self._generator_for(config))
        if discovered:
            config = self.store.save_discovered(config, discovered)
        return config, apply(text, config.mappings.all())

    def sanitize_file(self, config: SanitizerConfig, path, project_root) -> SanitizerConfig:
        """Sanitize one project file in place, mirroring the original into the shadow tree."""
        root = Path(project_root)
        entry = project_entry(path, root, config.skip_paths)
        if entry is None:
            return config

        original = read_text(entry.path)
        config, sanitized = self.sanitize_text(config, original)
        if sanitized == original:
            return config

        shadow_file = config.expand_shadow_path(root.name) / entry.relative
        shadow_file.parent.mkdir(parents=True, exist_ok=True)
        write_text(shadow_file, original, entry.mode)
        write_text(entry.path, sanitized, entry.mode)
        audit("SANITIZE_FILE", entry.relative, "SANITIZED")
        return config

    def _file_access(self, event: HookEvent) -> Decision:
        if not event.path:
            return Decision.allow()

        config = self.store.load()
        root = event.project_root()
        rules = self.rules_for(config, root)
        candidates = [event.path]
        if not os.path.isabs(event.path):
            candidates.append(str(root / event.path))
        if any(rules.is_protected_path(p) for p in candidates):
            audit("FILE_ACCESS", event.path, "BLOCKED")
            return Decision.deny("Access blocked: sensitive sanitizer file")

        if event.kind == FILE_WRITE:
            if not event.content:
                return Decision.allow()
            config, sanitized = self.sanitize_text(config, event.content)
            if sanitized == event.content:
                return Decision.allow()
            audit("FILE_WRITE", event.path, "SANITIZED")
            return Decision.modify_input({**event.tool_input, "content": sanitized})

        config = self.sanitize_file(config, event.path, root)

        if event.kind != FILE_EDIT:
            return Decision.allow()

        updates = {}
        if event.new_string:
            config, sanitized = self.sanitize_text(config, event.new_string)
            if sanitized != event.new_string:
                updates["new_string"] = sanitized
        edits = event.tool_input.get("edits")
        if isinstance(edits, list):
            config, sanitized_edits = self._sanitize_edits(config, edits)
            if sanitized_edits != edits:
                updates["edits"] = sanitized_edits
        if not updates:
            return Decision.allow()
        audit("FILE_EDIT", event.path, "SANITIZED")
        return Decision.modify_input({**event.tool_input, **updates})

    def _sanitize_edits(self, config: SanitizerConfig, edits):
        """MultiEdit carries one ``new_string`` per entry of ``edits``."""
        result = []
        for edit in edits:
            if isinstance(edit, dict) and isinstance(edit.get("new_string"), str) and edit["new_string"]:
                config, sanitized = self.sanitize_text(config, edit["new_string"])
                edit = {**edit, "new_string": sanitized}
            result.append(edit)
        return config, result

    def _shell_command(self, event: HookEvent) -> Decision:
        if not event.command:
            return Decision.allow()
        rules = self._rules
        if rules is None:
            rules = self.rules_for(self.store.load(), event.project_root())

        if rules.is_blocked_command(event.command):
            audit("EXEC_COMMAND", "command references sanitizer internals", "BLOCKED")
            return Decision.deny("Blocked: command references sanitizer internals")

        if not rules.needs_real_execution(event.command):
            return Decision.allow()

        audit("EXEC_COMMAND", "routed through real-execution wrapper", "WRAPPED")
        return Decision.modify_input({**event.tool_input, "command": rules.wrap_command(event.command)})

    def _tool_output(self, event: HookEvent) -> Decision:
        if not event.output:
            return Decision.allow()
        config = self.store.load()
        config, sanitized = self.sanitize_text(config, event.output)
        if sanitized == event.output:
            return Decision.allow()
        audit("TOOL_OUTPUT", event.tool_name or "output", "SANITIZED")
        return Decision.replace_output(sanitized)

    def session_start(self, event: Optional[HookEvent] = None) -> Decision:
        """Bulk-sanitize the project so every file shares one mapping table."""
        initialize_config(self.store)
        config = self.store.load()
        root = event.project_root() if event else Path(os.getcwd()).resolve()
        shadow = config.expand_shadow_path(root.name)
        files = list(iter_project_files(root, config.skip_paths, prune=(shadow,)))
        generator = self._generator_for(config)

        discovered = {}
        for entry in files:
            try:
                text = read_text(entry.path)
            except OSError:
                continue
            # Seeding with earlier finds keeps first-seen placeholders and avoids reuse.
            working = config.with_auto(config.mappings.merge(discovered))
            discovered.update(discover(text, working, generator))

        if discovered:
            config = self.store.save_discovered(config, discovered)
        mapping = config.mappings.all()

        changed = 0
        for entry in files:
            try:
                original = read_text(entry.path)
                sanitized = apply(original, mapping)
                if sanitized != original:
                    write_text(entry.path, sanitized, entry.mode)
                    changed += 1
            except OSError as exc:
                audit("SESSION_START", f"Skipped {entry.relative}: {exc}", "WARNING")
        audit("SESSION_START", f"{changed} of {len(files)} file(s) sanitized in {root}", "INFO")
        return Decision.allow()

    def session_stop(self, event: Optional[HookEvent] = None) -> Decision:
        """Restore real values into the shadow tree."""
        config = self.store.load()
        root = event.project_root() if event else Path(os.getcwd()).resolve()
        shadow = config.expand_shadow_path(root.name)
        reverse = config.mappings.reverse()
        sync_tree(root, shadow, config.skip_paths, transform=lambda text: reverse_apply(text, reverse))
        return Decision.allow()
