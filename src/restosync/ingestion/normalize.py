"""Normalization helpers.

Centralizes defensive handling of backend response shapes so the state
layer only ever sees validated entities.
"""

from __future__ import annotations

import math
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def unwrap_records(payload: Any) -> list[dict[str, Any]]:
    """Extract the record list from a refetch response.

    Accepts a bare list, a Spring page object (``{"content": [...]}``) or a
    ``{"data": [...]}`` wrapper. Non-object items are dropped.
    """
    items: Any = payload
    if isinstance(payload, dict):
        for key in ("content", "data", "items"):
            candidate = payload.get(key)
            if isinstance(candidate, list):
                items = candidate
                break
        else:
            return []
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]
