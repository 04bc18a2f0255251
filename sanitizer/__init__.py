from .config import MappingSet, MappingStore, SanitizerConfig
from .discovery import discover
from .hooks import Decision, HookEngine, HookEvent, HookRules, decode_event
from .substitution import apply, apply_with_fallback, reverse_apply
from .sync import sync_tree
from .utils import ConfigError, SanitizerError

__all__ = [
    "ConfigError",
    "Decision",
    "HookEngine",
    "HookEvent",
    "HookRules",
    "MappingSet",
    "MappingStore",
    "SanitizerConfig",
    "SanitizerError",
    "apply",
    "apply_with_fallback",
    "decode_event",
    "discover",
    "reverse_apply",
    "sync_tree",
]
