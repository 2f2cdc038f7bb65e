"""Buffering and thread bookkeeping for reasoning ("thinking") content."""

from __future__ import annotations

import logging
import random
import string
import time
from typing import Callable

from .events import OutputEvent, ThinkingClosed, ThinkingDelta

LOG = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_thread_id() -> str:
    """Return a time-seeded id such as `thinking_1718000000000_k3x9qa`."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(6))
    return f"thinking_{int(time.time() * 1000)}_{suffix}"


class ThinkingBuffer:
    """Per-response reasoning buffer.

    Text is held until `flush_threshold` characters have accumulated and then
    emitted as one `ThinkingDelta`. `close()` emits the remainder (with the
    accumulated signature) followed by `ThinkingClosed`, so callers can close
    a thread before visible output without tracking anything themselves.
    With `enabled=False` reasoning is swallowed and no events are produced.
    """

    def __init__(
        self,
        flush_threshold: int,
        *,
        enabled: bool = True,
        id_factory: Callable[[], str] = new_thread_id,
    ) -> None:
        self.flush_threshold = flush_threshold
        self.enabled = enabled
        self._id_factory = id_factory
        self.thread_id: str | None = None
        self.content = ""
        self.signature: str | None = None
        self.saw_reasoning = False
        self._thread_emitted = False

    @property
    def is_open(self) -> bool:
        return self.thread_id is not None

    def open(self) -> None:
        """Start a thread unless one is already open."""
        if self.thread_id is None:
            self.thread_id = self._id_factory()
            self._thread_emitted = False

    def append(self, text: str) -> list[OutputEvent]:
        """Buffer reasoning text, flushing a delta once the threshold is reached."""
        if not text:
            return []
        self.open()
        self.saw_reasoning = True
        self.content += text
        if len(self.content) >= self.flush_threshold:
            return self._emit(with_signature=False)
        return []

    def add_signature(self, fragment: str) -> None:
        """Collect a signature fragment for the final delta of the open thread."""
        if not fragment:
            return
        self.open()
        self.signature = (self.signature or "") + fragment

    def flush(self) -> list[OutputEvent]:
        """Emit buffered text now without closing the thread."""
        return self._emit(with_signature=False)

    def close(self) -> list[OutputEvent]:
        """Emit the remainder and close the open thread, if any."""
        if self.thread_id is None:
            return []
        thread_id = self.thread_id
        events = self._emit(with_signature=True, allow_empty=self.signature is not None)
        if self.enabled and self._thread_emitted:
            events.append(ThinkingClosed(thread_id=thread_id))
        LOG.debug("thinking thread closed thread=%s emitted=%s", thread_id, self._thread_emitted)
        self.thread_id = None
        self.content = ""
        self.signature = None
        self._thread_emitted = False
        return events

    def _emit(self, *, with_signature: bool, allow_empty: bool = False) -> list[OutputEvent]:
        """Turn the buffered text into a delta and reset the buffer."""
        if self.thread_id is None or (not self.content and not allow_empty):
            return []
        text = self.content
        self.content = ""
        if not self.enabled:
            return []
        self._thread_emitted = True
        signature = self.signature if with_signature else None
        return [ThinkingDelta(text=text, thread_id=self.thread_id, signature=signature)]


def _partial_tag_length(text: str, tag: str) -> int:
    """Length of the longest suffix of `text` that could start `tag`."""
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class InlineThinkingSplitter:
    """Separate `<think>`/`<thinking>` sections inlined in content text.

    `<think>` only opens a section before any visible text was seen;
    `<thinking>` opens one anywhere. Text that could be the start of a tag is
    held back until the next chunk decides it.
    """

    _TAGS = {"<thinking>": "</thinking>", "<think>": "</think>"}

    def __init__(self) -> None:
        self._buffer = ""
        self._closing: str | None = None
        self._seen_text = False

    def feed(self, text: str) -> list[tuple[str, str]]:
        """Return `("text" | "thinking", chunk)` pairs in stream order."""
        self._buffer += text
        parts: list[tuple[str, str]] = []
        while self._buffer:
            if self._closing is not None:
                found = self._buffer.find(self._closing)
                if found >= 0:
                    parts.append(("thinking", self._buffer[:found]))
                    self._buffer = self._buffer[found + len(self._closing) :]
                    self._closing = None
                    continue
                keep = _partial_tag_length(self._buffer, self._closing)
                parts.append(("thinking", self._buffer[: len(self._buffer) - keep]))
                self._buffer = self._buffer[len(self._buffer) - keep :]
                break

            tags = ["<thinking>"] if self._seen_text else ["<thinking>", "<think>"]
            hits = [(self._buffer.find(tag), tag) for tag in tags if tag in self._buffer]
            # `<think>` must lead the content; text before it makes it literal.
            hits = [(found, tag) for found, tag in hits if tag != "<think>" or not self._buffer[:found].strip()]
            if hits:
                found, tag = min(hits, key=lambda hit: (hit[0], -len(hit[1])))
                self._text(parts, self._buffer[:found])
                self._buffer = self._buffer[found + len(tag) :]
                self._closing = self._TAGS[tag]
                continue
            keep = max(_partial_tag_length(self._buffer, tag) for tag in tags)
            self._text(parts, self._buffer[: len(self._buffer) - keep])
            self._buffer = self._buffer[len(self._buffer) - keep :]
            break
        return [(kind, chunk) for kind, chunk in parts if chunk]

    def finish(self) -> list[tuple[str, str]]:
        """Release held-back text once no more content will arrive."""
        rest, self._buffer = self._buffer, ""
        if not rest:
            return []
        return [("thinking" if self._closing is not None else "text", rest)]

    def _text(self, parts: list[tuple[str, str]], chunk: str) -> None:
        if chunk.strip():
            self._seen_text = True
        parts.append(("text", chunk))
