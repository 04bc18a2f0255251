import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

import yaml

from .lease import FileLease, Lease
from .utils import ConfigError, _home_dir, audit, sanitizer_dir


CONFIG_NAME = "sanitizer.yaml"
DEFAULT_SKIP_PATHS = (".git", "node_modules", ".venv", "__pycache__")
DEFAULT_SHADOW_PATH = "~/.claude/unsanitized/{project}"
PLACEHOLDER_POLICIES = ("deterministic", "random")
_BOM = "\ufeff"
DOCUMENT_HEADER = (
    "# Rewritten by the sanitizer whenever new mappings are saved; comments are not kept.\n"
    "# Numbers, dates and yes/no are read as plain strings.\n"
)

_LITERAL_TAGS = (
    "tag:yaml.org,2002:bool",
    "tag:yaml.org,2002:int",
    "tag:yaml.org,2002:float",
    "tag:yaml.org,2002:timestamp",
)


class _ConfigLoader(yaml.SafeLoader):
    """SafeLoader that keeps every scalar other than null as a string."""


_ConfigLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _LITERAL_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _default_exec_shell() -> tuple:
    if os.name == "nt":
        return ("powershell.exe", "-NoProfile", "-Command")
    return ("/bin/sh", "-c")


def config_path() -> Path:
    raw = str(os.environ.get("SANITIZER_CONFIG", "")).strip()
    if raw:
        return Path(raw).expanduser()
    return sanitizer_dir() / CONFIG_NAME


def shadow_root() -> Path:
    """Parent directory holding one shadow tree per project."""
    return _home_dir() / ".claude" / "unsanitized"


@dataclass(frozen=True)
class MappingSet:
    """Manual (operator-curated) and automatic (discovered) real -> placeholder maps."""

    manual: dict = field(default_factory=dict)
    auto: dict = field(default_factory=dict)

    def all(self) -> dict:
        merged = dict(self.auto)
        merged.update(self.manual)
        return merged

    def reverse(self) -> dict:
        return {placeholder: real for real, placeholder in self.all().items()}

    def is_mapped(self, real) -> bool:
        return real in self.manual or real in self.auto

    def used_placeholders(self) -> set:
        return set(self.manual.values()) | set(self.auto.values())

    def merge(self, discovered) -> dict:
        """Return the automatic map extended with first-seen discovered entries."""
        merged = dict(self.auto)
        for real, placeholder in discovered.items():
            if real in self.manual or real in merged:
                continue
            merged[real] = placeholder
        return merged

    def with_auto(self, auto) -> "MappingSet":
        return replace(self, auto=dict(auto))


@dataclass(frozen=True)
class SanitizerConfig:
    mappings: MappingSet = field(default_factory=MappingSet)
    skip_paths: tuple = DEFAULT_SKIP_PATHS
    hostname_patterns: tuple = ()
    shadow_path: str = DEFAULT_SHADOW_PATH
    placeholder_policy: str = "deterministic"
    real_exec_patterns: tuple = ()
    exec_shell: tuple = field(default_factory=_default_exec_shell)

    def expand_shadow_path(self, project_name) -> Path:
        """Resolve ``~`` and ``{project}`` in the shadow-tree template."""
        template = str(self.shadow_path or DEFAULT_SHADOW_PATH)
        if template.startswith("~"):
            template = str(_home_dir()) + template[1:]
        return Path(os.path.normpath(template.replace("{project}", str(project_name), 1)))

    def with_auto(self, auto) -> "SanitizerConfig":
        return replace(self, mappings=self.mappings.with_auto(auto))


def _strip_bom(text):
    if text.startswith(_BOM):
        return text[len(_BOM):]
    return text


def _string_map(value, key):
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping.")
    return {str(k): str(v) for k, v in value.items()}


def _string_tuple(value, key, default=()):
    if value is None:
        return tuple(default)
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"'{key}' must be a list.")
    return tuple(str(item) for item in value if str(item).strip())


def parse_config(raw: dict) -> SanitizerConfig:
    policy = str(raw.get("placeholder_policy") or "deterministic").strip().lower()
    if policy not in PLACEHOLDER_POLICIES:
        raise ConfigError(
            f"placeholder_policy must be one of: {', '.join(PLACEHOLDER_POLICIES)}"
        )
    exec_shell = _string_tuple(raw.get("exec_shell"), "exec_shell", _default_exec_shell())
    return SanitizerConfig(
        mappings=MappingSet(
            manual=_string_map(raw.get("mappings_manual"), "mappings_manual"),
            auto=_string_map(raw.get("mappings_auto"), "mappings_auto"),
        ),
        skip_paths=_string_tuple(raw.get("skip_paths"), "skip_paths", DEFAULT_SKIP_PATHS),
        hostname_patterns=_string_tuple(raw.get("hostname_patterns"), "hostname_patterns"),
        shadow_path=str(raw.get("shadow_path") or DEFAULT_SHADOW_PATH),
        placeholder_policy=policy,
        real_exec_patterns=_string_tuple(raw.get("real_exec_patterns"), "real_exec_patterns"),
        exec_shell=exec_shell or _default_exec_shell(),
    )


class MappingStore:
    """Backing store for the config document and its automatic mappings."""

    def __init__(self, path=None, lease: Optional[Lease] = None):
        self.path = Path(path) if path is not None else config_path()
        self.lease = lease if lease is not None else FileLease(str(self.path) + ".lock")

    def _read_raw(self):
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Cannot read config {self.path}: {exc}")

        text = _strip_bom(text)
        if not text.strip():
            return {}
        try:
            loaded = yaml.load(text, Loader=_ConfigLoader)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid config at {self.path}: {exc}")
        if loaded is None:
            return {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config at {self.path} must be a mapping.")
        return loaded

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SanitizerConfig:
        """Load the config; a missing document yields the defaults."""
        raw = self._read_raw()
        if raw is None:
            return SanitizerConfig()
        return parse_config(raw)

    def _write_raw(self, raw):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = yaml.safe_dump(raw, sort_keys=False, allow_unicode=True, default_flow_style=False)
        fd, tmp_name = tempfile.mkstemp(prefix=".sanitizer-", suffix=".yaml", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(DOCUMENT_HEADER + body)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def persist(self, auto) -> dict:
        """Save automatic mappings, leaving every other stored field untouched.

        Entries already stored win over ``auto`` for the same key, and keys
        stored by a concurrent writer are kept. Returns the mapping as saved.
        """
        with self.lease:
            raw = self._read_raw()
            if raw is None:
                raw = {}
            stored = _string_map(raw.get("mappings_auto"), "mappings_auto")
            merged = dict(auto)
            merged.update(stored)
            if merged == stored and "mappings_auto" in raw:
                return stored
            raw["mappings_auto"] = merged
            self._write_raw(raw)
        audit("PERSIST", f"{len(merged) - len(stored)} new automatic mapping(s)", "INFO")
        return merged

    def save_discovered(self, config: SanitizerConfig, discovered) -> SanitizerConfig:
        """Merge, persist when anything is new, and return the updated config."""
        merged = config.mappings.merge(discovered)
        if len(merged) == len(config.mappings.auto):
            return config
        return config.with_auto(self.persist(merged))


def initialize_config(store: Optional[MappingStore] = None) -> bool:
    """Write an example config if none exists. Returns True when one was created."""
    store = store or MappingStore()
    if store.exists():
        return False

    store.path.parent.mkdir(parents=True, exist_ok=True)
    shadow_root().mkdir(parents=True, exist_ok=True)
    example = {
        "hostname_patterns": ["\\.domain\\.local"],
        "mappings_auto": {},
        "mappings_manual": {
            "server.domain.local": "server.example.test",
            "198.51.100.85": "111.50.100.1",
            "/home/realuser": "/home/exampleuser",
            "secretproject": "projectname",
        },
        "skip_paths": list(DEFAULT_SKIP_PATHS),
        "shadow_path": DEFAULT_SHADOW_PATH,
        "placeholder_policy": "deterministic",
    }
    with store.lease:
        if store.exists():
            return False
        store._write_raw(example)
    audit("BOOTSTRAP", f"Created example config at {store.path}", "INFO")
    return True
