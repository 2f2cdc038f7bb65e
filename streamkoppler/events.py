"""Canonical output events emitted by every protocol decoder."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class TextDelta:
    """Visible assistant text."""

    text: str
    type: str = field(default="text_delta", init=False)


@dataclass(frozen=True)
class ThinkingDelta:
    """A piece of reasoning text belonging to one thinking thread."""

    text: str
    thread_id: str
    signature: str | None = None
    type: str = field(default="thinking_delta", init=False)


@dataclass(frozen=True)
class ThinkingClosed:
    """Marks the end of a thinking thread."""

    thread_id: str
    type: str = field(default="thinking_closed", init=False)


@dataclass(frozen=True)
class ToolCallStart:
    """Informational start of a tool call; arguments follow later."""

    call_id: str
    name: str
    type: str = field(default="tool_call_start", init=False)


@dataclass(frozen=True)
class ToolCallComplete:
    """A fully materialized tool call, emitted exactly once per call.

    `args_json` is always valid JSON. When the upstream arguments could not be
    parsed, `raw_fallback` is true and `arguments` is `{"raw": <text>}`.
    """

    call_id: str
    name: str
    arguments: dict[str, Any]
    args_json: str
    raw_fallback: bool = False
    type: str = field(default="tool_call_complete", init=False)


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int
    total_tokens: int
    type: str = field(default="usage", init=False)


@dataclass(frozen=True)
class Error:
    """Terminal error for the current response."""

    kind: str
    message: str
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class StatusNotice:
    """Non-error progress information such as a retry or account failover."""

    kind: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="status", init=False)


OutputEvent = Union[
    TextDelta,
    ThinkingDelta,
    ThinkingClosed,
    ToolCallStart,
    ToolCallComplete,
    Usage,
    Error,
    StatusNotice,
]


def event_to_dict(event: OutputEvent) -> dict[str, Any]:
    """Convert an event into a JSON-serializable dict."""
    return asdict(event)


def collect_text(events: list[OutputEvent]) -> str:
    """Join all visible text of an event list."""
    return "".join(event.text for event in events if isinstance(event, TextDelta))
