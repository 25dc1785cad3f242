"""Shared sensitive-field masking utilities.

Provides ``redact_sensitive_fields``, a recursive, depth-limited function that
replaces values whose keys match known sensitive markers, and
``sanitize_log_value`` for stripping control characters out of
caller-controlled strings before they reach logs or audit records.

Both the audit logger and the HTTP surface delegate to these helpers so the
masking rules are defined once.
"""

from __future__ import annotations

import re

_MAX_REDACT_DEPTH = 20

# Canonical list of sensitive key markers (substring match, case-insensitive).
SENSITIVE_KEY_MARKERS: list[str] = [
    "password",
    "secret",
    "token",
    "assertion",
    "accesskey",
    "secretaccesskey",
    "sessiontoken",
    "clientsecret",
    "apikey",
    "credential",
    "material",
    "authorization",
]

# Control character pattern for log injection prevention.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def sanitize_log_value(value: str) -> str:
    """Replace control characters (newlines, tabs, etc.) to prevent log injection."""
    return _CONTROL_CHAR_RE.sub("_", value)


def _is_sensitive(key: str, extra_markers: frozenset[str]) -> bool:
    lowered = key.lower().replace("_", "")
    if any(marker in lowered for marker in SENSITIVE_KEY_MARKERS):
        return True
    return key.lower() in extra_markers


def redact_sensitive_fields(
    value: object,
    *,
    mask: str = "***",
    extra_markers: frozenset[str] = frozenset(),
    depth: int = 0,
    max_depth: int = _MAX_REDACT_DEPTH,
) -> object:
    """Recursively replace sensitive values in dicts/lists.

    Keys are matched by *substring* against ``SENSITIVE_KEY_MARKERS``
    (case-insensitive, underscores ignored) and exactly against
    ``extra_markers``. Strings are passed through ``sanitize_log_value``.
    When ``max_depth`` is exceeded the entire sub-tree is replaced with *mask*.
    """
    if depth >= max_depth:
        return mask
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, val in value.items():
            key_text = str(key)
            if _is_sensitive(key_text, extra_markers):
                redacted[key_text] = mask
            else:
                redacted[key_text] = redact_sensitive_fields(
                    val,
                    mask=mask,
                    extra_markers=extra_markers,
                    depth=depth + 1,
                    max_depth=max_depth,
                )
        return redacted
    if isinstance(value, (list, tuple)):
        return [
            redact_sensitive_fields(
                item,
                mask=mask,
                extra_markers=extra_markers,
                depth=depth + 1,
                max_depth=max_depth,
            )
            for item in value
        ]
    if isinstance(value, str):
        return sanitize_log_value(value)
    return value
