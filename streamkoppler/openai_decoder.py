"""Decoder for OpenAI-style chat completion chunk streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .conformance import normalize_chunk_object
from .decoder_base import StreamDecoder
from .events import OutputEvent, TextDelta, ToolCallStart, Usage
from .json_helpers import int_or_none
from .sse import SSERecord
from .thinking import InlineThinkingSplitter, ThinkingBuffer
from .tool_calls import (
    FragmentRepair,
    InvalidArgs,
    ParsedArgs,
    ToolCallAccumulator,
    ToolCallEntry,
    new_tool_call_id,
    parse_arguments,
    repair_repeated_arguments,
)

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    call_id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class ChoiceDelta:
    index: int
    content: str | None = None
    reasoning: str | None = None
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass(frozen=True)
class ChatChunk:
    choices: list[ChoiceDelta]
    usage: dict[str, Any] | None = None


def _parse_tool_fragment(raw: Any, position: int) -> ToolCallFragment | None:
    if not isinstance(raw, dict):
        return None
    function = raw.get("function") if isinstance(raw.get("function"), dict) else {}
    index = raw.get("index")
    arguments = function.get("arguments")
    return ToolCallFragment(
        index=index if isinstance(index, int) and not isinstance(index, bool) else position,
        call_id=raw.get("id") or None,
        name=function.get("name") or None,
        arguments=arguments if isinstance(arguments, str) else "",
    )


def parse_chat_chunk(payload: dict[str, Any]) -> ChatChunk:
    """Read a chunk, accepting the legacy `choice.message` shape as well."""
    choices: list[ChoiceDelta] = []
    raw_choices = payload.get("choices") if isinstance(payload.get("choices"), list) else []
    for position, raw in enumerate(raw_choices):
        if not isinstance(raw, dict):
            continue
        delta = raw.get("delta") or raw.get("message") or {}
        if not isinstance(delta, dict):
            delta = {}
        reasoning = delta.get("reasoning_content")
        if reasoning is None:
            reasoning = delta.get("reasoning")
        content = delta.get("content")
        fragments = []
        for tool_position, tool_raw in enumerate(delta.get("tool_calls") or []):
            fragment = _parse_tool_fragment(tool_raw, tool_position)
            if fragment is not None:
                fragments.append(fragment)
        index = raw.get("index")
        choices.append(
            ChoiceDelta(
                index=index if isinstance(index, int) else position,
                content=content if isinstance(content, str) else None,
                reasoning=reasoning if isinstance(reasoning, str) else None,
                tool_calls=fragments,
                finish_reason=raw.get("finish_reason") or None,
            )
        )
    usage = payload.get("usage")
    return ChatChunk(choices=choices, usage=usage if isinstance(usage, dict) else None)


class OpenAIChunkDecoder(StreamDecoder):
    """Chunk decoder with per-index tool-call accumulation.

    Visible content is emitted directly; reasoning goes through the thinking
    buffer and is closed before the next visible content or tool call.
    """

    protocol = "openai"

    def __init__(
        self,
        thinking: ThinkingBuffer,
        *,
        repair: FragmentRepair | None = None,
        placeholder: str = "<think/>",
        split_inline_thinking: bool = True,
    ) -> None:
        super().__init__(thinking, placeholder=placeholder)
        self.tool_calls = ToolCallAccumulator(repair)
        self._inline = InlineThinkingSplitter() if split_inline_thinking else None
        self._completed: set[tuple[str, str]] = set()
        self._prompt_tokens: int | None = None
        self._completion_tokens: int | None = None
        self._total_tokens: int | None = None
        self._finished = False

    def on_record(self, record: SSERecord) -> list[OutputEvent]:
        """Decode one chat chunk after normalizing its choices."""
        if record.is_done:
            return []
        payload = self._decode_json(record)
        if payload is None:
            return []
        normalize_chunk_object(payload)
        chunk = parse_chat_chunk(payload)
        if chunk.usage is not None:
            self._remember_usage(chunk.usage)

        events: list[OutputEvent] = []
        for choice in chunk.choices:
            if choice.reasoning:
                events.extend(self.thinking.append(choice.reasoning))
            if choice.content:
                events.extend(self._on_content(choice.content))
            for fragment in choice.tool_calls:
                events.extend(self._on_tool_fragment(fragment))
            if choice.finish_reason:
                events.extend(self._on_finish(choice.finish_reason))
        return events

    def on_stream_end(self) -> list[OutputEvent]:
        """Complete pending calls, then report usage."""
        if self._finished:
            return []
        self._finished = True
        events = self._drain_inline()
        events.extend(self.thinking.close())
        events.extend(self._complete_pending())
        events.extend(self._placeholder_if_only_thinking())
        if self._prompt_tokens is not None or self._completion_tokens is not None:
            input_tokens = self._prompt_tokens or 0
            output_tokens = self._completion_tokens or 0
            total = self._total_tokens if self._total_tokens is not None else input_tokens + output_tokens
            events.append(Usage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total))
        return events

    def on_cancel(self) -> list[OutputEvent]:
        """Flush text and thinking; partial tool calls are dropped."""
        events = self._drain_inline()
        events.extend(self.thinking.close())
        if self.tool_calls.pending():
            LOG.debug("openai cancel drops %s partial tool call(s)", len(self.tool_calls.pending()))
            self.tool_calls.clear()
        return events

    def _remember_usage(self, usage: dict[str, Any]) -> None:
        """Keep the latest numeric counts; other values are ignored."""
        prompt = int_or_none(usage.get("prompt_tokens"))
        if prompt is not None:
            self._prompt_tokens = prompt
        completion = int_or_none(usage.get("completion_tokens"))
        if completion is not None:
            self._completion_tokens = completion
        total = int_or_none(usage.get("total_tokens"))
        if total is not None:
            self._total_tokens = total

    def _on_content(self, content: str) -> list[OutputEvent]:
        """Split inline thinking tags out of visible content."""
        parts = self._inline.feed(content) if self._inline is not None else [("text", content)]
        return self._route(parts)

    def _drain_inline(self) -> list[OutputEvent]:
        if self._inline is None:
            return []
        return self._route(self._inline.finish())

    def _route(self, parts: list[tuple[str, str]]) -> list[OutputEvent]:
        """Send `(kind, text)` parts to the thinking buffer or out as text."""
        events: list[OutputEvent] = []
        for kind, text in parts:
            if kind == "thinking":
                events.extend(self.thinking.append(text))
                continue
            events.extend(self.thinking.close())
            self.produced_output = True
            events.append(TextDelta(text=text))
        return events

    def _on_tool_fragment(self, fragment: ToolCallFragment) -> list[OutputEvent]:
        """Merge one tool-call delta into the entry for its index."""
        events: list[OutputEvent] = []
        if fragment.index not in self.tool_calls:
            events.extend(self.thinking.close())
        entry = self.tool_calls.append(
            fragment.index,
            name=fragment.name,
            fragment=fragment.arguments,
            call_id=fragment.call_id,
        )
        if entry.name and not entry.started:
            entry.started = True
            if not entry.call_id:
                entry.call_id = new_tool_call_id(fragment.index)
            events.append(ToolCallStart(call_id=entry.call_id, name=entry.name))
        return events

    def _on_finish(self, reason: str) -> list[OutputEvent]:
        """Handle `finish_reason`; a `length` cut keeps thinking open."""
        LOG.debug("openai finish reason=%s pending_tool_calls=%s", reason, len(self.tool_calls.pending()))
        if reason == "length":
            # Truncated turn; a continuation may still extend the thread.
            return []
        events = self._drain_inline()
        events.extend(self.thinking.close())
        events.extend(self._complete_pending())
        return events

    def _complete_pending(self) -> list[OutputEvent]:
        events: list[OutputEvent] = []
        for entry in self.tool_calls.pending():
            self.tool_calls.pop(entry.key)
            event = self._complete(entry)
            if event is not None:
                events.append(event)
        return events

    def _complete(self, entry: ToolCallEntry) -> OutputEvent | None:
        """Parse the arguments of one entry, repairing a glued resend once."""
        if not entry.name:
            LOG.warning("openai skipping tool call without name index=%s", entry.key)
            return None
        call_id = entry.call_id or new_tool_call_id(entry.key if isinstance(entry.key, int) else 0)
        dedupe_key = (call_id, entry.name)
        if dedupe_key in self._completed:
            LOG.debug("openai skipping duplicate tool call id=%s name=%s", call_id, entry.name)
            return None

        result = parse_arguments(entry.text, final=True)
        if isinstance(result, InvalidArgs):
            repaired = repair_repeated_arguments(entry.text)
            if repaired != entry.text:
                result = parse_arguments(repaired, final=True)
                if isinstance(result, ParsedArgs):
                    LOG.info("openai repaired duplicated tool arguments name=%s", entry.name)
        if not isinstance(result, ParsedArgs):
            LOG.error(
                "openai dropping tool call with unparseable arguments id=%s name=%s error=%s",
                call_id,
                entry.name,
                getattr(result, "error", "incomplete"),
            )
            return None
        self._completed.add(dedupe_key)
        return self._tool_call_event(call_id, entry.name, result.value)
