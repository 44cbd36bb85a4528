"""Server-Sent Events framing for the agent response stream.

The agent service sends ``event:`` lines followed by one or more ``data:``
lines. Each ``data:`` line is attributed to the most recently declared
event name. Unlike the general event-stream convention, a blank line does
not reset the event name: attribution lasts until the next ``event:`` line.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

EVENT_PREFIX = "event: "
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSERecord:
    """One ``data:`` payload and the event name it belongs to."""

    event: str
    data: str


class SSEFramer:
    """Incremental decoder and line framer for a single response stream.

    Create one per request and discard it when the stream ends; the
    current event name is per-stream state.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.current_event = ""

    def feed(self, chunk: bytes) -> list[SSERecord]:
        """Decode one network chunk and return the records it completes."""
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._frame(lines)

    def flush(self) -> list[SSERecord]:
        """Return records from any text left over at end of stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder:
            return []
        return self._frame(remainder.split("\n"))

    def _frame(self, lines: list[str]) -> list[SSERecord]:
        records = []
        for line in lines:
            line = line.rstrip("\r")
            if line.startswith(EVENT_PREFIX):
                self.current_event = line[len(EVENT_PREFIX):].strip()
            elif line.startswith(DATA_PREFIX):
                data = line[len(DATA_PREFIX):].strip()
                if not data or data == DONE_SENTINEL:
                    continue
                records.append(SSERecord(event=self.current_event, data=data))
        return records


async def aiter_records(
    byte_chunks: AsyncIterator[bytes],
) -> AsyncIterator[list[SSERecord]]:
    """Yield the records of each chunk as one batch, in arrival order."""
    framer = SSEFramer()
    async for chunk in byte_chunks:
        records = framer.feed(chunk)
        if records:
            yield records
    tail = framer.flush()
    if tail:
        yield tail


def format_sse(event: str, data: Any) -> str:
    """Encode a single event block in the agent stream wire format."""
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    return f"{EVENT_PREFIX}{event}\n{DATA_PREFIX}{data}\n\n"
