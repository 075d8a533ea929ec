"""Redaction utilities for logging.

Tool arguments reach the logs only through `redact_tool_arguments`: obvious
secrets are masked and long task descriptions are truncated.
"""

from __future__ import annotations

from typing import Any

_SENSITIVE_KEYS = {
    "secret",
    "password",
    "pass",
    "pwd",
    "token",
    "auth",
    "authorization",
    "cookie",
    "set-cookie",
    "api-key",
    "api_key",
    "x-api-key",
}

_SENSITIVE_FRAGMENTS = ("token", "secret", "password", "passwd", "apikey", "api_key", "session")

MAX_LOG_STR = 200


def is_sensitive_key(key: str) -> bool:
    lk = (key or "").strip().lower()
    if not lk:
        return False
    if lk in _SENSITIVE_KEYS:
        return True
    return any(frag in lk for frag in _SENSITIVE_FRAGMENTS)


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}…(+{len(value) - limit} chars)"


def _redact(value: Any, *, depth: int, limit: int) -> Any:
    if depth > 4:
        return "<nested>"
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if is_sensitive_key(str(k)) and v not in (None, ""):
                out[k] = "<redacted>"
            else:
                out[k] = _redact(v, depth=depth + 1, limit=limit)
        return out
    if isinstance(value, list):
        items = [_redact(v, depth=depth + 1, limit=limit) for v in value[:20]]
        if len(value) > 20:
            items.append(f"<{len(value) - 20} more>")
        return items
    if isinstance(value, str):
        return _truncate(value, limit)
    return value


def redact_tool_arguments(name: str, arguments: Any, *, limit: int = MAX_LOG_STR) -> Any:
    """Redact tool arguments for safe logging."""
    _ = name
    return _redact(arguments, depth=0, limit=int(limit))
