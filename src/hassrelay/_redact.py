"""Helpers for safe debug logging.

The upstream connection carries a long-lived access token, and a
``get_states`` result can hold thousands of state objects. Payloads pass
through :func:`redact_for_log` before they reach DEBUG logs: secrets are
masked, long strings are cut and long lists are summarized.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "access_token",
        "api_password",
        "password",
        "token",
        "refresh_token",
        "authorization",
        "cookie",
    }
)

_MAX_DEPTH = 20


def _mask(value: Any) -> str:
    if isinstance(value, str) and value.lower().startswith("bearer "):
        return "Bearer <redacted>"
    return "<redacted>"


def redact_for_log(
    value: Any,
    *,
    max_string: int = 512,
    max_items: int = 50,
    _depth: int = 0,
) -> Any:
    """Return a copy of *value* that is safe to log.

    Mapping keys listed in ``_SECRET_KEYS`` (case-insensitive) are masked.
    Strings longer than *max_string* and sequences longer than *max_items*
    are truncated. Anything that is not plain JSON data is logged by
    ``repr``.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    nested = {"max_string": max_string, "max_items": max_items, "_depth": _depth + 1}
    if isinstance(value, Mapping):
        return {
            str(key): _mask(item) if str(key).lower() in _SECRET_KEYS else redact_for_log(item, **nested)
            for key, item in value.items()
        }
    if isinstance(value, Sequence):
        items = [redact_for_log(item, **nested) for item in value[:max_items]]
        if len(value) > max_items:
            items.append(f"<{len(value) - max_items} more>")
        return items
    return repr(value)
