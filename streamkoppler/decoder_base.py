"""Shared contract for protocol decoders."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from .events import OutputEvent, TextDelta, ToolCallComplete
from .json_helpers import bounded_text
from .sse import SSERecord
from .thinking import ThinkingBuffer
from .tool_calls import tool_arguments_object

LOG = logging.getLogger(__name__)


class StreamDecoder(ABC):
    """Single-pass, stateful consumer of one response's SSE records.

    Decoders never raise for malformed record payloads; such records are
    logged and skipped. One instance serves exactly one response.
    """

    protocol = "unknown"

    def __init__(self, thinking: ThinkingBuffer, *, placeholder: str = "<think/>") -> None:
        self.thinking = thinking
        self.placeholder = placeholder
        self.produced_output = False
        self.skipped_records = 0

    @abstractmethod
    def on_record(self, record: SSERecord) -> list[OutputEvent]:
        """Decode one record into zero or more output events."""

    @abstractmethod
    def on_stream_end(self) -> list[OutputEvent]:
        """Flush state after the upstream stream ended normally."""

    def on_cancel(self) -> list[OutputEvent]:
        """Flush buffered text and thinking; partial tool calls are dropped."""
        return self.thinking.close()

    def _decode_json(self, record: SSERecord) -> dict[str, Any] | None:
        """Parse a record body as a JSON object, or log and return None."""
        try:
            payload = json.loads(record.data)
        except json.JSONDecodeError as exc:
            self.skipped_records += 1
            LOG.warning(
                "skipping malformed %s record event=%s error=%s data=%s",
                self.protocol,
                record.event,
                exc,
                bounded_text(record.data),
            )
            return None
        if not isinstance(payload, dict):
            self.skipped_records += 1
            LOG.warning("skipping non-object %s record event=%s", self.protocol, record.event)
            return None
        return payload

    def _tool_call_event(self, call_id: str, name: str, value: Any) -> ToolCallComplete:
        arguments = tool_arguments_object(value)
        self.produced_output = True
        LOG.debug("%s tool call complete id=%s name=%s", self.protocol, call_id, name)
        return ToolCallComplete(
            call_id=call_id,
            name=name,
            arguments=arguments,
            args_json=json.dumps(arguments, ensure_ascii=False),
        )

    def _raw_tool_call_event(self, call_id: str, name: str, raw: str) -> ToolCallComplete:
        """Report a call whose arguments never parsed as `{"raw": <text>}`."""
        arguments = {"raw": raw}
        self.produced_output = True
        LOG.warning("%s tool call with unparseable arguments id=%s name=%s", self.protocol, call_id, name)
        return ToolCallComplete(
            call_id=call_id,
            name=name,
            arguments=arguments,
            args_json=json.dumps(arguments, ensure_ascii=False),
            raw_fallback=True,
        )

    def _placeholder_if_only_thinking(self) -> list[OutputEvent]:
        """Emit a placeholder token when a response held only reasoning."""
        if self.thinking.saw_reasoning and not self.produced_output and self.placeholder:
            LOG.warning("%s response contained only reasoning, emitting placeholder", self.protocol)
            self.produced_output = True
            return [TextDelta(text=self.placeholder)]
        return []
