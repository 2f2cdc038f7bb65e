"""Decoder for Anthropic-style message event streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from .batching import TextBatcher
from .decoder_base import StreamDecoder
from .events import Error, OutputEvent, ToolCallStart, Usage
from .sse import SSERecord
from .thinking import ThinkingBuffer
from .tool_calls import AppendOnly, ParsedArgs, ToolCallAccumulator, new_tool_call_id, parse_arguments

LOG = logging.getLogger(__name__)

_ERROR_KINDS = {
    "rate_limit_error": "rate_limited",
    "authentication_error": "auth_invalid",
    "permission_error": "auth_invalid",
    "overloaded_error": "server_error",
    "api_error": "server_error",
    "invalid_request_error": "client_error",
    "not_found_error": "client_error",
}


@dataclass(frozen=True)
class MessageStart:
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentBlockStart:
    index: int
    block_type: str
    block_id: str | None = None
    name: str | None = None
    data: str | None = None


@dataclass(frozen=True)
class ContentBlockDelta:
    index: int
    delta_type: str
    text: str = ""


@dataclass(frozen=True)
class ContentBlockStop:
    index: int


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MessageStop:
    pass


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class ErrorRecord:
    error_type: str
    message: str


@dataclass(frozen=True)
class UnknownRecord:
    record_type: str


AnthropicRecord = Union[
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageDelta,
    MessageStop,
    Ping,
    ErrorRecord,
    UnknownRecord,
]

# Which field of a content_block_delta carries the payload text.
_DELTA_TEXT_FIELDS = {
    "text_delta": "text",
    "input_json_delta": "partial_json",
    "thinking_delta": "thinking",
    "signature_delta": "signature",
}


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def parse_anthropic_record(event_name: str | None, payload: dict[str, Any]) -> AnthropicRecord:
    """Map one decoded JSON body to its typed record."""
    record_type = str(payload.get("type") or event_name or "")
    if record_type == "message_start":
        return MessageStart(usage=_dict(_dict(payload.get("message")).get("usage")))
    if record_type == "content_block_start":
        block = _dict(payload.get("content_block"))
        return ContentBlockStart(
            index=_int(payload.get("index")),
            block_type=str(block.get("type") or ""),
            block_id=block.get("id"),
            name=block.get("name"),
            data=block.get("data"),
        )
    if record_type == "content_block_delta":
        delta = _dict(payload.get("delta"))
        delta_type = str(delta.get("type") or "")
        text = delta.get(_DELTA_TEXT_FIELDS.get(delta_type, "text"))
        return ContentBlockDelta(
            index=_int(payload.get("index")),
            delta_type=delta_type,
            text=text if isinstance(text, str) else "",
        )
    if record_type == "content_block_stop":
        return ContentBlockStop(index=_int(payload.get("index")))
    if record_type == "message_delta":
        return MessageDelta(
            stop_reason=_dict(payload.get("delta")).get("stop_reason"),
            usage=_dict(payload.get("usage")),
        )
    if record_type == "message_stop":
        return MessageStop()
    if record_type == "ping":
        return Ping()
    if record_type == "error":
        error = _dict(payload.get("error"))
        return ErrorRecord(
            error_type=str(error.get("type") or "api_error"),
            message=str(error.get("message") or "upstream reported an error"),
        )
    return UnknownRecord(record_type=record_type)


def _input_tokens(usage: dict[str, Any]) -> int:
    return (
        _int(usage.get("input_tokens"))
        + _int(usage.get("cache_creation_input_tokens"))
        + _int(usage.get("cache_read_input_tokens"))
    )


class AnthropicDecoder(StreamDecoder):
    """Content-block state machine for Anthropic message streams.

    Text is batched, thinking is buffered per block, and a tool call is
    reported as soon as its accumulated input parses as JSON.
    """

    protocol = "anthropic"

    def __init__(
        self,
        thinking: ThinkingBuffer,
        batcher: TextBatcher,
        *,
        placeholder: str = "<think/>",
    ) -> None:
        super().__init__(thinking, placeholder=placeholder)
        self.batcher = batcher
        self.tool_calls = ToolCallAccumulator(AppendOnly())
        self.redacted_thinking: list[str] = []
        self.stop_reason: str | None = None
        self._block_types: dict[int, str] = {}
        self._input_tokens: int | None = None
        self._output_tokens = 1
        self._usage_emitted = False
        self._tool_counter = 0

    def on_record(self, record: SSERecord) -> list[OutputEvent]:
        """Decode one Anthropic record and dispatch it by type."""
        if record.is_done:
            return []
        payload = self._decode_json(record)
        if payload is None:
            return []
        parsed = parse_anthropic_record(record.event, payload)

        if isinstance(parsed, ContentBlockDelta):
            return self._on_block_delta(parsed)
        if isinstance(parsed, ContentBlockStart):
            return self._on_block_start(parsed)
        if isinstance(parsed, ContentBlockStop):
            return self._on_block_stop(parsed)
        if isinstance(parsed, MessageStart):
            self._input_tokens = _input_tokens(parsed.usage)
            LOG.debug("anthropic message start input_tokens=%s", self._input_tokens)
            return []
        if isinstance(parsed, MessageDelta):
            self._on_message_delta(parsed)
            return []
        if isinstance(parsed, MessageStop):
            return self._finish()
        if isinstance(parsed, Ping):
            return []
        if isinstance(parsed, ErrorRecord):
            LOG.warning("anthropic stream error type=%s message=%s", parsed.error_type, parsed.message)
            events = self.batcher.flush() + self.thinking.close()
            events.append(Error(kind=_ERROR_KINDS.get(parsed.error_type, "server_error"), message=parsed.message))
            return events
        LOG.debug("anthropic ignoring unknown record type=%s", parsed.record_type)
        return []

    def on_stream_end(self) -> list[OutputEvent]:
        """Flush remaining buffers and report usage if not reported yet."""
        return self._finish()

    def on_cancel(self) -> list[OutputEvent]:
        if self.tool_calls.pending():
            LOG.debug("anthropic cancel drops %s partial tool call(s)", len(self.tool_calls.pending()))
            self.tool_calls.clear()
        return self.batcher.flush() + self.thinking.close()

    def _on_block_start(self, block: ContentBlockStart) -> list[OutputEvent]:
        """Open a text, thinking or tool-use block."""
        self._block_types[block.index] = block.block_type
        if block.block_type == "text":
            return self.thinking.close()
        if block.block_type == "thinking":
            events = self.batcher.flush() + self.thinking.close()
            self.thinking.open()
            return events
        if block.block_type == "redacted_thinking":
            if block.data:
                self.redacted_thinking.append(block.data)
            return []
        if block.block_type == "tool_use":
            events = self.batcher.flush() + self.thinking.close()
            call_id = block.block_id or new_tool_call_id(self._tool_counter)
            self._tool_counter += 1
            name = block.name or ""
            self.tool_calls.start(block.index, call_id=call_id, name=name)
            events.append(ToolCallStart(call_id=call_id, name=name))
            return events
        LOG.debug("anthropic ignoring content block type=%s", block.block_type)
        return []

    def _on_block_delta(self, delta: ContentBlockDelta) -> list[OutputEvent]:
        """Route a block delta to the text batcher, thinking buffer or tool accumulator."""
        if delta.delta_type == "text_delta":
            if not delta.text:
                return []
            events = self.thinking.close()
            self.produced_output = True
            events.extend(self.batcher.append(delta.text))
            return events
        if delta.delta_type == "thinking_delta":
            return self.thinking.append(delta.text)
        if delta.delta_type == "signature_delta":
            self.thinking.add_signature(delta.text)
            return []
        if delta.delta_type == "input_json_delta":
            return self._on_tool_fragment(delta.index, delta.text)
        LOG.debug("anthropic ignoring delta type=%s", delta.delta_type)
        return []

    def _on_tool_fragment(self, index: int, fragment: str) -> list[OutputEvent]:
        """Append partial JSON input to the tool call of block `index`."""
        if index not in self.tool_calls:
            LOG.debug("anthropic tool fragment for finished or unknown block index=%s", index)
            return []
        entry = self.tool_calls.append(index, fragment=fragment)
        if not fragment:
            return []
        result = self.tool_calls.try_complete(index)
        if not isinstance(result, ParsedArgs):
            return []
        self.tool_calls.pop(index)
        return [self._tool_call_event(entry.call_id or "", entry.name or "", result.value)]

    def _on_block_stop(self, stop: ContentBlockStop) -> list[OutputEvent]:
        """Close the block; a tool-use block completes its call here."""
        block_type = self._block_types.pop(stop.index, None)
        if stop.index in self.tool_calls:
            entry = self.tool_calls.pop(stop.index)
            result = parse_arguments(entry.text, final=True)
            if isinstance(result, ParsedArgs):
                return [self._tool_call_event(entry.call_id or "", entry.name or "", result.value)]
            LOG.error(
                "anthropic dropping tool call with invalid input id=%s name=%s",
                entry.call_id,
                entry.name,
            )
            return []
        if block_type == "thinking":
            return self.thinking.close()
        if block_type == "text":
            return self.batcher.flush()
        return []

    def _on_message_delta(self, delta: MessageDelta) -> None:
        """Track stop reason and the running token counts."""
        if delta.stop_reason:
            self.stop_reason = delta.stop_reason
            LOG.debug("anthropic stop reason=%s", delta.stop_reason)
        if delta.usage:
            if delta.usage.get("input_tokens") is not None:
                self._input_tokens = _input_tokens(delta.usage)
            if delta.usage.get("output_tokens") is not None:
                self._output_tokens = _int(delta.usage.get("output_tokens"))

    def _finish(self) -> list[OutputEvent]:
        """Final flush, placeholder and usage, emitted once."""
        events = self.batcher.flush() + self.thinking.close()
        events.extend(self._placeholder_if_only_thinking())
        if self._input_tokens is not None and not self._usage_emitted:
            self._usage_emitted = True
            events.append(
                Usage(
                    input_tokens=self._input_tokens,
                    output_tokens=self._output_tokens,
                    total_tokens=self._input_tokens + self._output_tokens,
                )
            )
        return events
