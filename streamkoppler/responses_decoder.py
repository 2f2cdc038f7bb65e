"""Decoder for Responses-style item/event streams used by the coding backend.

Events are identified by the SSE `event:` line or, when that is missing, by
the `type` field of the JSON body. Function calls follow the item lifecycle:
`output_item.added` starts a call, argument deltas accumulate, and
`output_item.done` completes it.
"""

from __future__ import annotations

import logging
from typing import Any

from .decoder_base import StreamDecoder
from .events import Error, OutputEvent, TextDelta, ToolCallStart, Usage
from .json_helpers import int_or_none
from .sse import SSERecord
from .thinking import ThinkingBuffer
from .tool_calls import AppendOnly, ParsedArgs, ToolCallAccumulator, ToolCallEntry, parse_arguments

LOG = logging.getLogger(__name__)

_TEXT_EVENTS = {"response.output_text.delta", "response.content_part.delta"}
_REASONING_DELTA_EVENTS = {
    "response.reasoning_summary_text.delta",
    "response.reasoning_text.delta",
    "response.reasoning.delta",
}
_REASONING_DONE_EVENTS = {
    "response.reasoning_summary_text.done",
    "response.reasoning_text.done",
    "response.reasoning.done",
}
_LIFECYCLE_EVENTS = {
    "response.created",
    "response.in_progress",
    "response.content_part.added",
    "response.content_part.done",
    "response.output_text.done",
}


def _delta_text(data: dict[str, Any]) -> str:
    """Text of a delta event; some variants nest it as `delta.text`."""
    delta = data.get("delta")
    if isinstance(delta, dict):
        delta = delta.get("text")
    if isinstance(delta, str) and delta:
        return delta
    text = data.get("text")
    return text if isinstance(text, str) else ""


def _error_message(data: dict[str, Any]) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "upstream reported an error")
    response = data.get("response")
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        return str(response["error"].get("message") or "response failed")
    return str(data.get("message") or error or "upstream reported an error")


class ResponsesDecoder(StreamDecoder):
    protocol = "responses"

    def __init__(self, thinking: ThinkingBuffer, *, placeholder: str = "<think/>") -> None:
        super().__init__(thinking, placeholder=placeholder)
        self.tool_calls = ToolCallAccumulator(AppendOnly())
        self._reported: set[tuple[str, str]] = set()
        # item id or call id of every completed call, mapped to its call id
        self._completed: dict[str, str] = {}
        self._current_key: str | None = None
        self._reasoning_streamed = False
        self._counter = 0
        self._usage: Usage | None = None
        self._usage_emitted = False
        self._finished = False

    def on_record(self, record: SSERecord) -> list[OutputEvent]:
        if record.is_done:
            return []
        data = self._decode_json(record)
        if data is None:
            return []
        event_type = record.event or str(data.get("type") or "")

        if event_type in _TEXT_EVENTS:
            return self._text(_delta_text(data))
        if event_type in _REASONING_DELTA_EVENTS:
            self._reasoning_streamed = True
            return self.thinking.append(_delta_text(data))
        if event_type in _REASONING_DONE_EVENTS:
            events: list[OutputEvent] = []
            if not self._reasoning_streamed:
                # Nothing was streamed for this part; the done event carries the full text.
                events.extend(self.thinking.append(_delta_text(data)))
            self._reasoning_streamed = False
            events.extend(self.thinking.close())
            return events
        if event_type == "response.output_item.added":
            return self._on_item_added(data)
        if event_type == "response.function_call_arguments.delta":
            self._on_arguments_delta(data)
            return []
        if event_type == "response.function_call_arguments.done":
            self._on_arguments_done(data)
            return []
        if event_type == "response.output_item.done":
            return self._on_item_done(data)
        if event_type == "response.output_item.function_call":
            item = data.get("function_call") or data.get("item") or data
            return self._complete_item(item if isinstance(item, dict) else {})
        if event_type == "response.completed":
            self._remember_usage(data)
            return []
        if event_type in {"error", "response.failed"}:
            message = _error_message(data)
            LOG.error("responses stream error event=%s message=%s", event_type, message)
            return self.thinking.close() + [Error(kind="server_error", message=message)]
        if event_type in _LIFECYCLE_EVENTS:
            return []
        return self._legacy_chunk(event_type, data)

    def on_stream_end(self) -> list[OutputEvent]:
        """Complete calls that never saw `output_item.done` and report usage."""
        if self._finished:
            return []
        self._finished = True
        events = self.thinking.close()
        for entry in self.tool_calls.pending():
            self.tool_calls.pop(entry.key)
            event = self._complete_entry(entry)
            if event is not None:
                events.append(event)
        events.extend(self._placeholder_if_only_thinking())
        if self._usage is not None and not self._usage_emitted:
            self._usage_emitted = True
            events.append(self._usage)
        return events

    def on_cancel(self) -> list[OutputEvent]:
        self.tool_calls.clear()
        return self.thinking.close()

    def _text(self, text: str) -> list[OutputEvent]:
        if not text:
            return []
        events = self.thinking.close()
        self.produced_output = True
        events.append(TextDelta(text=text))
        return events

    def _legacy_chunk(self, event_type: str, data: dict[str, Any]) -> list[OutputEvent]:
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("content"), str):
                return self._text(delta["content"])
            return []
        LOG.debug("responses ignoring unhandled event type=%s", event_type or "-")
        return []

    def _next_call_id(self) -> str:
        self._counter += 1
        return f"fc_{self._counter}"

    def _on_item_added(self, data: dict[str, Any]) -> list[OutputEvent]:
        item = data.get("item") if isinstance(data.get("item"), dict) else {}
        if item.get("type") != "function_call":
            return []
        call_id = item.get("call_id") or item.get("id") or self._next_call_id()
        key = item.get("id") or call_id
        name = item.get("name") or ""
        events = self.thinking.close()
        entry = self.tool_calls.append(key, name=name, fragment=item.get("arguments") or "", call_id=call_id)
        self._current_key = key
        if not entry.started:
            entry.started = True
            events.append(ToolCallStart(call_id=call_id, name=name))
        return events

    def _key_for(self, data: dict[str, Any]) -> str:
        """Accumulator key of an argument event, falling back to the open call."""
        key = data.get("item_id") or data.get("call_id") or self._current_key
        if key is None:
            key = self._next_call_id()
            self._current_key = key
        return key

    def _already_completed(self, key: str) -> bool:
        """Whether late argument events refer to a call reported by `output_item.done`."""
        call_id = self._completed.get(str(key))
        if call_id is None:
            return False
        LOG.debug("responses ignoring late argument event key=%s call_id=%s", key, call_id)
        return True

    def _on_arguments_delta(self, data: dict[str, Any]) -> None:
        delta = data.get("delta")
        if isinstance(delta, str) and delta:
            key = self._key_for(data)
            if not self._already_completed(key):
                self.tool_calls.append(key, fragment=delta)

    def _on_arguments_done(self, data: dict[str, Any]) -> None:
        """Record the final argument text; the call completes on `output_item.done`."""
        arguments = data.get("arguments")
        key = self._key_for(data)
        if self._already_completed(key):
            return
        entry = self.tool_calls.start(key, name=data.get("name"), call_id=data.get("call_id"))
        if isinstance(arguments, str) and arguments:
            self.tool_calls.set_final_arguments(key, arguments)
        LOG.debug("responses arguments done key=%s name=%s", key, entry.name)

    def _on_item_done(self, data: dict[str, Any]) -> list[OutputEvent]:
        item = data.get("item") if isinstance(data.get("item"), dict) else {}
        if item.get("type") != "function_call":
            return []
        return self._complete_item(item)

    def _complete_item(self, item: dict[str, Any]) -> list[OutputEvent]:
        """Report a finished function-call item once."""
        key = item.get("id") or item.get("call_id") or self._current_key
        entry = self.tool_calls.pop(key) if key is not None else None
        if entry is None:
            entry = ToolCallEntry(key=key or self._next_call_id())
        if item.get("name"):
            entry.name = item["name"]
        if item.get("call_id"):
            entry.call_id = item["call_id"]
        if isinstance(item.get("arguments"), str) and item["arguments"]:
            entry.final_arguments = item["arguments"]
        if key == self._current_key:
            self._current_key = None
        call_id = entry.call_id or str(entry.key)
        self._completed[str(entry.key)] = call_id
        self._completed[call_id] = call_id
        event = self._complete_entry(entry)
        return [event] if event is not None else []

    def _complete_entry(self, entry: ToolCallEntry) -> OutputEvent | None:
        """Build the completion event, deduplicated by `(call_id, name)`."""
        name = entry.name or ""
        call_id = entry.call_id or str(entry.key)
        if (call_id, name) in self._reported:
            LOG.debug("responses skipping duplicate tool call id=%s name=%s", call_id, name)
            return None
        self._reported.add((call_id, name))
        if not name:
            LOG.warning("responses skipping tool call without name id=%s", call_id)
            return None
        result = parse_arguments(entry.text, final=True)
        if isinstance(result, ParsedArgs):
            return self._tool_call_event(call_id, name, result.value)
        return self._raw_tool_call_event(call_id, name, entry.text)

    def _remember_usage(self, data: dict[str, Any]) -> None:
        response = data.get("response") if isinstance(data.get("response"), dict) else {}
        usage = response.get("usage") if isinstance(response.get("usage"), dict) else None
        if usage is None:
            return
        input_tokens = int_or_none(usage.get("input_tokens")) or 0
        output_tokens = int_or_none(usage.get("output_tokens")) or 0
        total = int_or_none(usage.get("total_tokens"))
        self._usage = Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total if total is not None else input_tokens + output_tokens,
        )
