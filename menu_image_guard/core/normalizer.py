"""
Menu title normalization.

Turns free-text meal titles into stable cache keys and storage-safe
filenames. Examples:

    "Matt's Smoked Ribs" -> "matts smoked ribs"
    "Tacos!"             -> "tacos"
    "smoked ribs"        -> "smoked-ribs" (filename)
"""

import re

_DISALLOWED = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_title(raw: str) -> str:
    """Canonicalize a menu title into a cache key.

    Lower-cases, drops everything except ASCII letters, digits, whitespace
    and hyphens, then trims and collapses internal whitespace. The result
    is a fixed point: normalizing it again returns it unchanged.

    Args:
        raw: Title as typed by the user

    Returns:
        Normalized key, possibly empty
    """
    normalized = _DISALLOWED.sub("", raw.lower())
    return _WHITESPACE.sub(" ", normalized.strip())


def title_to_filename(key: str) -> str:
    """Replace whitespace runs in a normalized key with hyphens."""
    return _WHITESPACE.sub("-", key)
