"""Accumulation of streamed tool-call arguments.

Providers deliver tool-call arguments as JSON text fragments. Some of them
resend fragments: either the identical text again, or the whole argument
string so far followed by new text. The accumulator merges fragments through a
`FragmentRepair` strategy and reports whether the collected text is complete.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Hashable, Union

from .json_helpers import bounded_text

LOG = logging.getLogger(__name__)


class FragmentRepair(ABC):
    """Strategy for merging one new fragment into accumulated arguments."""

    @abstractmethod
    def merge(self, existing: str, fragment: str) -> str:
        raise NotImplementedError


class AppendOnly(FragmentRepair):
    """Plain concatenation; for protocols that never resend fragments."""

    def merge(self, existing: str, fragment: str) -> str:
        return existing + fragment


class DuplicateFragmentRepair(FragmentRepair):
    """Drop exact and cumulative resends of argument text.

    A fragment equal to everything accumulated so far is discarded. A fragment
    that starts with everything accumulated so far replaces it, which keeps
    only its new tail. A fragment that is already a suffix of the accumulated
    text is discarded as a resend. This misfires on a provider that
    legitimately streams the same short piece twice in a row.
    """

    def merge(self, existing: str, fragment: str) -> str:
        if not existing:
            return fragment
        if fragment == existing:
            LOG.debug("tool args: discarding repeated fragment len=%s", len(fragment))
            return existing
        if fragment.startswith(existing):
            LOG.debug("tool args: cumulative resend, keeping tail len=%s", len(fragment) - len(existing))
            return fragment
        if existing.endswith(fragment):
            LOG.debug("tool args: discarding duplicated suffix len=%s", len(fragment))
            return existing
        return existing + fragment


@dataclass
class ToolCallEntry:
    key: Hashable
    call_id: str | None = None
    name: str | None = None
    arguments: str = ""
    final_arguments: str | None = None
    started: bool = False

    @property
    def text(self) -> str:
        if self.final_arguments is not None:
            return self.final_arguments
        return self.arguments


@dataclass(frozen=True)
class ParsedArgs:
    value: Any
    text: str


@dataclass(frozen=True)
class IncompleteArgs:
    text: str


@dataclass(frozen=True)
class InvalidArgs:
    text: str
    error: str


CompletionResult = Union[ParsedArgs, IncompleteArgs, InvalidArgs]


def _is_truncation(text: str, exc: json.JSONDecodeError) -> bool:
    """Whether a decode error means "not finished yet" rather than "broken"."""
    if exc.msg.startswith("Unterminated string"):
        return True
    if exc.msg.startswith("Extra data"):
        return False
    return exc.pos >= len(text.rstrip())


def parse_arguments(text: str, *, final: bool = False) -> CompletionResult:
    """Parse argument text; an empty final argument string counts as `{}`."""
    candidate = text
    if not candidate.strip():
        if not final:
            return IncompleteArgs(text=text)
        candidate = "{}"
    try:
        return ParsedArgs(value=json.loads(candidate), text=candidate)
    except json.JSONDecodeError as exc:
        if not final and _is_truncation(candidate, exc):
            return IncompleteArgs(text=text)
        return InvalidArgs(text=text, error=str(exc))


def repair_repeated_arguments(text: str) -> str:
    """Strip duplicated content from argument text that failed to parse.

    Looks for a prefix (between 5 and 50 characters, longest first) that shows
    up again later and keeps only the text from that later occurrence on.
    Then, if several objects were glued together as `{...}{...}`, keeps only
    the first balanced object. Legitimately repetitive arguments can match the
    prefix rule, so this must only run after a normal parse failed.
    """
    cleaned = text
    max_check = min(50, len(cleaned) // 2)
    for length in range(max_check, 4, -1):
        prefix = cleaned[:length]
        found = cleaned.find(prefix, length)
        if found != -1:
            LOG.debug("tool args repair: prefix len=%s repeats at=%s", length, found)
            cleaned = cleaned[found:]
            break

    if "}{" in cleaned:
        depth = 0
        for position, char in enumerate(cleaned):
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    if position < len(cleaned) - 1:
                        LOG.debug("tool args repair: trimming glued objects at=%s", position + 1)
                        cleaned = cleaned[: position + 1]
                    break
    return cleaned


class ToolCallAccumulator:
    """Per-response tool-call state keyed by provider index or call id."""

    def __init__(self, repair: FragmentRepair | None = None) -> None:
        self.repair = repair or AppendOnly()
        self._entries: dict[Hashable, ToolCallEntry] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get(self, key: Hashable) -> ToolCallEntry | None:
        return self._entries.get(key)

    def start(self, key: Hashable, *, call_id: str | None = None, name: str | None = None) -> ToolCallEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = ToolCallEntry(key=key)
            self._entries[key] = entry
        if call_id and not entry.call_id:
            entry.call_id = call_id
        if name and not entry.name:
            entry.name = name
        return entry

    def append(
        self,
        key: Hashable,
        name: str | None = None,
        fragment: str = "",
        call_id: str | None = None,
    ) -> ToolCallEntry:
        entry = self.start(key, call_id=call_id, name=name)
        if fragment:
            entry.arguments = self.repair.merge(entry.arguments, fragment)
        return entry

    def set_final_arguments(self, key: Hashable, text: str) -> ToolCallEntry:
        """Record the authoritative full argument text sent by a done event."""
        entry = self.start(key)
        entry.final_arguments = text
        return entry

    def try_complete(self, key: Hashable, final: bool = False) -> CompletionResult:
        entry = self._entries.get(key)
        if entry is None:
            return InvalidArgs(text="", error=f"unknown tool call key {key!r}")
        result = parse_arguments(entry.text, final=final)
        if isinstance(result, InvalidArgs):
            LOG.debug(
                "tool args not parseable key=%s name=%s error=%s text=%s",
                key,
                entry.name,
                result.error,
                bounded_text(entry.text),
            )
        return result

    def pop(self, key: Hashable) -> ToolCallEntry | None:
        return self._entries.pop(key, None)

    def pending(self) -> list[ToolCallEntry]:
        """Entries not yet consumed, in first-seen order."""
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


def new_tool_call_id(index: int) -> str:
    """Fallback id for providers that omit one, e.g. `tool_call_0_1718000000000`."""
    return f"tool_call_{index}_{int(time.time() * 1000)}"


def tool_arguments_object(value: Any) -> dict[str, Any]:
    """Tool arguments must be an object; wrap anything else as `{"value": ...}`."""
    if isinstance(value, dict):
        return value
    return {"value": value}
