"""Sensitive data logging filter.

Structlog processor that keeps tunnel tokens, database URLs with ``auth=``
parameters and similar credentials out of CI logs, which are often public.
"""

import re
from collections.abc import MutableMapping
from typing import Any

import structlog

# Field names whose values are always redacted (substring match)
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "passwd",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "bearer",
        "credential",
        "private_key",
        "pubkey",
        "public_key",
        "cert",
        "dsn",
    }
)

# Values that look like secrets whatever their field name
SENSITIVE_PATTERNS = [
    # JWT tokens (cloudflared tunnel tokens are base64 JSON)
    re.compile(r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*"),
    re.compile(r"Bearer\s+[A-Za-z0-9_-]+", re.IGNORECASE),
    re.compile(r"gh[ps]_[A-Za-z0-9]{36,}"),
    re.compile(r"github_pat_[A-Za-z0-9_]{22,}"),
    re.compile(r"[a-fA-F0-9]{40,}"),
]

# Partial masks: keep the surrounding text, hide the secret part
_MASKS = [
    (re.compile(r"([?&]auth=)[^&#\s]*"), r"\1****"),
    (re.compile(r"(--token[\s=]+)\S+"), r"\1****"),
]

REDACTED = "***REDACTED***"


def mask_auth_in_url(url: str) -> str:
    """Hide the value of an ``auth=`` query parameter."""
    return re.sub(r"([?&]auth=)[^&#]*", r"\1****", url)


def sanitize_url(value: str | None) -> str:
    """Strip a BOM, surrounding quotes and whitespace from a pasted URL."""
    if not value:
        return ""
    cleaned = value.lstrip("\ufeff").strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1].strip()
    return cleaned


def mask_token(value: str | None, visible: int = 4) -> str:
    """Show only the last few characters of a secret."""
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "****"
    return f"****{value[-visible:]}"


def _is_sensitive_field(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def _redact_sensitive_value(value: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        if pattern.search(value):
            return REDACTED
    for pattern, replacement in _MASKS:
        value = pattern.sub(replacement, value)
    return value


def _redact(value: Any) -> Any:
    if isinstance(value, MutableMapping):
        return _redact_dict(value)
    if isinstance(value, list | tuple):
        return [_redact(item) for item in value]
    if isinstance(value, str):
        return _redact_sensitive_value(value)
    return value


def _redact_dict(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in list(data.keys()):
        if _is_sensitive_field(str(key)):
            data[key] = REDACTED
        else:
            data[key] = _redact(data[key])
    return data


def redact_sensitive_data(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts sensitive data from log events.

    Add it before the renderer:

        structlog.configure(processors=[..., redact_sensitive_data, renderer])
    """
    return _redact_dict(event_dict)
