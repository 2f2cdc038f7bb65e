"""Repairs for non-conforming OpenAI-style chunk streams.

Several OpenAI-compatible providers deviate from the chunk format in ways that
break strict consumers:

- `data:{...}` without the space after the colon,
- the whole choice payload sent as `choice.message` instead of `choice.delta`,
- choices with an empty delta that carry nothing,
- a single choice whose `index` is missing or not zero.

Only records that needed a change are re-serialized; everything else passes
through untouched.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .json_helpers import bounded_text

LOG = logging.getLogger(__name__)

_DATA_NO_SPACE_RE = re.compile(r"^data:(?=\S)", re.MULTILINE)
_DATA_LINE_RE = re.compile(r"^data: (.*)$", re.MULTILINE)


def normalize_chunk_object(obj: Any) -> bool:
    """Normalize one decoded chunk in place and report whether it changed."""
    if not isinstance(obj, dict):
        return False
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return False

    modified = False
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        if message and not choice.get("delta"):
            choice["delta"] = message
            del choice["message"]
            modified = True

    # Reverse order so removals do not shift unvisited positions.
    for position in range(len(choices) - 1, -1, -1):
        choice = choices[position]
        if not isinstance(choice, dict):
            continue
        if choice.get("finish_reason"):
            delta = choice.get("delta")
            if not isinstance(delta, dict) or not delta:
                LOG.debug("conformance: finish-only choice position=%s, synthesizing empty delta", position)
                choice["delta"] = {"role": "assistant", "content": ""}
                modified = True
            elif not delta.get("role"):
                delta["role"] = "assistant"
                modified = True
            continue
        if isinstance(choice.get("delta"), dict) and not choice["delta"]:
            LOG.debug("conformance: dropping empty-delta choice position=%s", position)
            del choices[position]
            modified = True

    if len(choices) == 1 and isinstance(choices[0], dict):
        index = choices[0].get("index")
        if index is None or index != 0 or isinstance(index, bool):
            choices[0]["index"] = 0
            modified = True
    return modified


def _fix_payload(payload: str) -> str | None:
    """Return a re-serialized payload when it needed repair, else None."""
    if not payload.strip() or payload.strip() == "[DONE]":
        return None
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError:
        LOG.debug("conformance: skipping unparseable data record payload=%s", bounded_text(payload))
        return None
    if not normalize_chunk_object(obj):
        return None
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def fix_line(line: str) -> str:
    """Repair one complete SSE line; non-data lines pass through."""
    if not line.startswith("data:"):
        return line
    if not line.startswith("data: "):
        line = "data: " + line[5:].lstrip(" ")
    fixed = _fix_payload(line[6:])
    if fixed is None:
        return line
    return "data: " + fixed


def fix_chunk(text: str) -> str:
    """Repair every `data:` record contained in one text chunk."""
    text = _DATA_NO_SPACE_RE.sub("data: ", text)

    def _replace(match: re.Match[str]) -> str:
        fixed = _fix_payload(match.group(1))
        if fixed is None:
            return match.group(0)
        return "data: " + fixed

    return _DATA_LINE_RE.sub(_replace, text)
