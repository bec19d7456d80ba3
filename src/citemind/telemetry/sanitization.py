"""PII scrubbing for telemetry properties and error context."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable, Mapping
from typing import Any

SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "key",
    "credit_card",
    "ssn",
    "phone",
    "address",
    "ip_address",
    "user_agent",
)
REDACTED = "[REDACTED]"
TRUNCATION_SUFFIX = "...[truncated]"
MAX_STRING_CHARS = 500
MAX_LIST_ITEMS = 10
MAX_MAPPING_KEYS = 20

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

_Replacement = str | Callable[[re.Match[str]], str]

_MESSAGE_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def is_sensitive_field(name: str) -> bool:
    lowered = name.lower()
    return any(sensitive in lowered for sensitive in SENSITIVE_FIELDS)


def hash_value(value: str) -> str:
    """Stable anonymized stand-in for an identifying string."""

    return "hash_" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def sanitize_properties(properties: Mapping[str, Any]) -> dict[str, Any]:
    """Drop sensitive keys, hash emails and clamp sizes for analytics events."""

    return {
        str(key): _sanitize_entry(str(key), value)
        for key, value in properties.items()
        if not is_sensitive_field(str(key))
    }


def redact_sensitive(properties: Mapping[str, Any]) -> dict[str, Any]:
    """Like sanitize_properties, but keep sensitive top-level keys as `[REDACTED]`.

    Used for error-tracking context, where knowing a field was present matters.
    """

    return {
        str(key): REDACTED if is_sensitive_field(str(key)) else _sanitize_entry(str(key), value)
        for key, value in properties.items()
    }


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        if _EMAIL_PATTERN.match(value):
            return hash_value(value)
        if len(value) > MAX_STRING_CHARS:
            return value[:MAX_STRING_CHARS] + TRUNCATION_SUFFIX
        return value
    if isinstance(value, list | tuple):
        return [sanitize_value(item) for item in list(value)[:MAX_LIST_ITEMS]]
    if isinstance(value, Mapping):
        limited = list(value.items())[:MAX_MAPPING_KEYS]
        return {
            str(key): _sanitize_entry(str(key), item)
            for key, item in limited
            if not is_sensitive_field(str(key))
        }
    return value


def sanitize_error_message(text: str) -> str:
    """Redact obvious secrets and emails embedded in exception messages."""

    redacted = text.strip()
    for pattern, replacement in _MESSAGE_REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)
    return sanitize_value(redacted) if len(redacted) > MAX_STRING_CHARS else redacted


def _sanitize_entry(key: str, value: Any) -> Any:
    if "email" in key.lower() and isinstance(value, str):
        return hash_value(value)
    return sanitize_value(value)
