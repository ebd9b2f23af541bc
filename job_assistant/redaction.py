"""Redaction and size bounding for tool inputs and outputs."""

from __future__ import annotations

import json
from typing import Any

REDACTION_MARKER = "[REDACTED: Contains sensitive data]"
TRUNCATION_MARKER = "... [TRUNCATED]"

SENSITIVE_KEYWORDS = frozenset(
    {
        "password",
        "passwd",
        "token",
        "secret",
        "credential",
        "api_key",
        "apikey",
        "private_key",
        "authorization",
    }
)


def serialize(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def contains_sensitive(value: Any, keywords: frozenset[str] = SENSITIVE_KEYWORDS) -> bool:
    """Return True when the serialized value mentions any sensitive keyword."""
    text = serialize(value).lower()
    return any(keyword in text for keyword in keywords)


def redact(value: Any) -> tuple[Any, bool]:
    """Replace the whole value with the marker if it looks sensitive.

    Partial redaction is never attempted: one match anywhere in the
    serialized form replaces the entire field.
    """
    if value is None:
        return None, False
    if contains_sensitive(value):
        return REDACTION_MARKER, True
    return value, False


def truncate(value: Any, max_bytes: int, keep_chars: int) -> tuple[Any, bool]:
    """Bound the serialized size of ``value``; oversize values become a marked string.

    The kept prefix is at most ``keep_chars`` characters and the result,
    marker included, never encodes to more than ``max_bytes``.
    """
    if value is None:
        return None, False
    text = serialize(value)
    if len(text.encode("utf-8")) <= max_bytes:
        return value, False
    budget = max(max_bytes - len(TRUNCATION_MARKER.encode("utf-8")), 0)
    head = text[:keep_chars].encode("utf-8")[:budget].decode("utf-8", errors="ignore")
    return head + TRUNCATION_MARKER, True


def sanitize(value: Any, max_bytes: int, keep_chars: int) -> tuple[Any, bool, bool]:
    """Redact, then truncate. Returns ``(value, redacted, truncated)``."""
    value, redacted = redact(value)
    if redacted:
        return value, True, False
    value, truncated = truncate(value, max_bytes, keep_chars)
    return value, False, truncated
