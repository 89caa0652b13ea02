"""Redaction helpers for safe logging. All external data must pass through these.

Phone numbers, WhatsApp JIDs and emails never reach the log stream; the
webhook and sync paths log hashes, lengths and id prefixes instead.
"""

import hashlib
import re
from typing import Any

# JIDs first: "5511999998888@s.whatsapp.net" would otherwise half-match as email
_JID_PATTERN = re.compile(r"[\w.\-:]+@(?:s\.whatsapp\.net|g\.us|lid|c\.us)\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact PII patterns from a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Structure only, never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def hash_identifier(value: str) -> str:
    """Non-reversible short hash for correlating a contact across log lines."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def id_prefix(value: str | None, length: int = 8) -> str:
    """First characters of a provider id, enough to grep for it."""
    if not value:
        return ""
    return value[:length]


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
