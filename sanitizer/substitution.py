from .placeholders import sanitize_ips


def apply(text, mapping):
    """Replace each key of ``mapping`` in ``text`` with its value.

    Keys are replaced longest first: with both "10.0.0.1" and "10.0.0.10"
    mapped, replacing the shorter key first would leave a stray "0" behind.
    """
    if not mapping:
        return text
    for key in sorted(mapping, key=len, reverse=True):
        if key:
            text = text.replace(key, mapping[key])
    return text


def reverse_apply(text, reverse_mapping):
    """Restore real values; ``reverse_mapping`` is placeholder -> real."""
    return apply(text, reverse_mapping)


def apply_with_fallback(text, mapping):
    """Apply ``mapping``, then replace any IPv4 address it did not cover."""
    return sanitize_ips(apply(text, mapping))
