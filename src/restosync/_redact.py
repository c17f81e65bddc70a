"""Helpers for safe debug logging.

Order and booking payloads carry customer contact details, and backend
calls carry bearer tokens. Raw payloads pass through :func:`redact_for_log`
before they reach a DEBUG log line.
"""

from __future__ import annotations

from collections.abc import Mapping, Set
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

# Matched as substrings of the normalized key, so ``customerEmail``,
# ``contact_phone`` and ``deliveryAddress`` are all covered.
_SENSITIVE_KEY_PARTS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "authorization",
    "cookie",
    "email",
    "phone",
    "address",
)

_REDACTED = "<redacted>"
_MAX_DEPTH = 20


def is_sensitive_key(key: object) -> bool:
    normalized = str(key).lower().replace("_", "").replace("-", "")
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def _scalar(value: Any, max_string: int) -> Any:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str) and len(value) > max_string:
        return f"{value[:max_string]}…<truncated>"
    return value


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted, JSON-friendly copy of *value* for debug logs.

    Pydantic models are dumped by alias first. Unknown objects are logged
    by ``repr`` only.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True, exclude={"raw"})
    if value is None or isinstance(value, (bool, int, float, str, Enum, datetime, date)):
        return _scalar(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    def _child(item: Any) -> Any:
        return redact_for_log(item, max_string=max_string, _depth=_depth + 1)

    if isinstance(value, Mapping):
        return {str(k): _REDACTED if is_sensitive_key(k) else _child(v) for k, v in value.items()}
    if isinstance(value, Set):
        return sorted((_child(item) for item in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_child(item) for item in value]
    return repr(value)
