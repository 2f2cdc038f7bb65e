"""Batching of visible text deltas by word count, size, and age."""

from __future__ import annotations

import re
import time
from typing import Callable

from .events import TextDelta

_WORD_RE = re.compile(r"\S+")


class TextBatcher:
    """Coalesce small text deltas into fewer, larger ones.

    The buffer is released once it holds `word_threshold` words, or
    `char_threshold` characters, or when `max_delay_ms` has passed since the
    previous release. The delay clock starts when the batcher is created.
    """

    def __init__(
        self,
        *,
        word_threshold: int = 20,
        char_threshold: int = 160,
        max_delay_ms: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.word_threshold = word_threshold
        self.char_threshold = char_threshold
        self.max_delay_ms = max_delay_ms
        self._clock = clock
        self._buffer = ""
        self._last_flush = clock()

    @property
    def pending(self) -> str:
        return self._buffer

    def append(self, text: str) -> list[TextDelta]:
        if not text:
            return []
        self._buffer += text
        if self._due():
            return self.flush()
        return []

    def flush(self) -> list[TextDelta]:
        """Release the buffer unconditionally."""
        if not self._buffer:
            return []
        event = TextDelta(text=self._buffer)
        self._buffer = ""
        self._last_flush = self._clock()
        return [event]

    def _due(self) -> bool:
        if len(self._buffer) >= self.char_threshold:
            return True
        if len(_WORD_RE.findall(self._buffer)) >= self.word_threshold:
            return True
        return (self._clock() - self._last_flush) * 1000 >= self.max_delay_ms
