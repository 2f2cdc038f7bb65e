"""JSON helpers used by logging and decoders."""

from __future__ import annotations

import json
from typing import Any

_TRUNCATED_MARKER = "...<truncated>"


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize a payload for log lines, cut to `max_len` characters."""
    try:
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        text = repr(payload)
    if len(text) <= max_len:
        return text
    return text[:max_len] + _TRUNCATED_MARKER


def bounded_text(text: str, max_len: int = 500) -> str:
    """Cut a raw upstream string for log lines."""
    if len(text) <= max_len:
        return text
    return text[:max_len] + _TRUNCATED_MARKER



def int_or_none(value: Any) -> int | None:
    """Integer value of a JSON number; `None` for anything else, booleans included."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)
