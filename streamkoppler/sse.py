"""Incremental server-sent-events reassembly.

Network reads split SSE records at arbitrary points, including in the middle of
a line or between the `\\r` and `\\n` of a line ending. `SSEFrameDecoder` buffers
partial input and yields complete records only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

_EOL_RE = re.compile(r"\r\n|\r|\n")

DONE_MARKER = "[DONE]"


@dataclass(frozen=True)
class SSERecord:
    """One dispatched SSE record."""

    data: str
    event: str | None = None
    id: str | None = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_MARKER


class SSEFrameDecoder:
    """Turn arbitrarily chunked text into `SSERecord`s.

    `line_hook` sees every complete line before it is interpreted and may
    rewrite it. With `split_data_lines` each `data:` line is dispatched on its
    own instead of waiting for the blank separator line; several OpenAI-style
    providers omit separators, so their streams are read that way.
    """

    def __init__(
        self,
        *,
        line_hook: Callable[[str], str] | None = None,
        split_data_lines: bool = False,
    ) -> None:
        self._line_hook = line_hook
        self._split_data_lines = split_data_lines
        self._buffer = ""
        self._event: str | None = None
        self._last_id: str | None = None
        self._data_lines: list[str] = []

    def feed(self, text: str) -> list[SSERecord]:
        """Consume one network chunk and return records completed by it."""
        self._buffer += text
        records: list[SSERecord] = []
        while True:
            match = _EOL_RE.search(self._buffer)
            if match is None:
                break
            # A trailing CR may be the first half of a CRLF split across reads.
            if match.group(0) == "\r" and match.end() == len(self._buffer):
                break
            line = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end() :]
            record = self._process_line(line)
            if record is not None:
                records.append(record)
        return records

    def finish(self) -> list[SSERecord]:
        """Flush whatever is buffered once the stream has ended."""
        records: list[SSERecord] = []
        tail = self._buffer.rstrip("\r")
        self._buffer = ""
        if tail:
            record = self._process_line(tail)
            if record is not None:
                records.append(record)
        record = self._dispatch()
        if record is not None:
            records.append(record)
        return records

    def _process_line(self, line: str) -> SSERecord | None:
        if self._line_hook is not None:
            line = self._line_hook(line)
        if not line:
            record = self._dispatch()
            self._event = None
            return record
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            if self._split_data_lines:
                return SSERecord(data=value, event=self._event, id=self._last_id)
            self._data_lines.append(value)
        elif field == "event":
            self._event = value or None
        elif field == "id":
            self._last_id = value or None
        return None

    def _dispatch(self) -> SSERecord | None:
        if not self._data_lines:
            return None
        record = SSERecord(data="\n".join(self._data_lines), event=self._event, id=self._last_id)
        self._data_lines = []
        self._event = None
        return record

