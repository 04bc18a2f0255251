import re
import string
from typing import Optional

from .config import SanitizerConfig
from .placeholders import PlaceholderGenerator, find_ips, generator_for
from .utils import audit

_LABEL = r"[a-z0-9-]"
_HOST_CHARS = frozenset(string.ascii_letters + string.digits + "-.")


def _strip_anchors(pattern):
    pattern = str(pattern).strip()
    if pattern.startswith("^"):
        pattern = pattern[1:]
    if pattern.endswith("$") and not pattern.endswith("\\$"):
        pattern = pattern[:-1]
    return pattern


def compile_hostname_pattern(pattern):
    """Build a matcher for a configured hostname pattern.

    The match is case-insensitive and runs from the pattern to the end of the
    host name; ``hostname_start`` widens it leftwards over the remaining
    labels, so ``\\.domain\\.local`` captures ``srv01.domain.local``.
    """
    body = _strip_anchors(pattern)
    return re.compile(rf"(?:{body})(?:\.{_LABEL}+)*(?!{_LABEL})", re.IGNORECASE)


def hostname_start(text, start, floor=0):
    """Walk left from ``start`` over label characters and dots, stopping at ``floor``."""
    while start > floor and text[start - 1] in _HOST_CHARS:
        start -= 1
    return start


def find_hostnames(text, patterns):
    found = {}
    for pattern in patterns:
        try:
            matcher = compile_hostname_pattern(pattern)
        except re.error as exc:
            audit("DISCOVERY", f"Invalid hostname pattern {pattern!r}: {exc}", "WARNING")
            continue
        floor = 0
        for match in matcher.finditer(text):
            start = hostname_start(text, match.start(), floor)
            floor = match.end()
            value = text[start:match.end()].strip(".")
            if value:
                found.setdefault(value, None)
    return list(found)


def discover(text, config: SanitizerConfig, generator: Optional[PlaceholderGenerator] = None) -> dict:
    """Return new real -> placeholder entries for values not yet mapped.

    The mapping store is never touched here; callers merge and persist.
    """
    if not text:
        return {}
    generator = generator or generator_for(config.placeholder_policy)
    mappings = config.mappings
    used = mappings.used_placeholders()
    discovered = {}

    for ip in find_ips(text):
        if mappings.is_mapped(ip) or ip in discovered:
            continue
        placeholder = generator.ip(ip, used)
        discovered[ip] = placeholder
        used.add(placeholder)

    for hostname in find_hostnames(text, config.hostname_patterns):
        if mappings.is_mapped(hostname) or hostname in discovered:
            continue
        placeholder = generator.hostname(hostname, used)
        discovered[hostname] = placeholder
        used.add(placeholder)

    return discovered
