"""Stream Reconstructor, turns chunked model output into discrete events.

Model text arrives in arbitrary fragments: a record can be split mid-key,
mid-escape or mid-UTF-8 sequence. The reconstructor keeps an accumulation
buffer across calls and only emits a record once its line is complete.

Line handling:
  - `data: {...}` and bare `{...}` lines are candidate records
  - a candidate that fails to decode is held as pending and joined with
    the following lines (records whose string values contain raw newlines)
  - a pending record is abandoned if a later candidate line decodes on its own
  - any other line (prose, markdown fences, blank separators) is ignored
    unless it continues a pending record

Events come out in line order, each exactly once.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from codeforge.gateway.types import StreamEvent

logger = logging.getLogger(__name__)

EVENT_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
MAX_PENDING_CHARS = 2_000_000  # Drop a pending record that grows past this


def format_sse(event: StreamEvent | dict) -> str:
    """Encode one event in the wire format: `data: <json>` plus a blank line."""
    data = event.to_dict() if isinstance(event, StreamEvent) else event
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _strip_prefix(line: str) -> str | None:
    """Return the record body of a candidate line, or None if it is not one."""
    if line.startswith(EVENT_PREFIX):
        body = line[len(EVENT_PREFIX) :]
        return body[1:] if body.startswith(" ") else body
    if line.startswith("{"):
        return line
    return None


def _decode(body: str) -> dict | None:
    try:
        record = json.loads(body, strict=False)
    except ValueError:
        return None
    return record if isinstance(record, dict) else None


class StreamReconstructor:
    """Incremental parser for newline-delimited event records.

    Usage:
        rec = StreamReconstructor()
        for chunk in chunks:
            for event in rec.feed(chunk):
                ...
        for event in rec.flush():
            ...
    """

    def __init__(self):
        self._buffer = ""  # Text after the last newline (incomplete line)
        self._pending: str | None = None  # Candidate record awaiting more lines
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False
        self.emitted = 0
        self.dropped_lines = 0

    @property
    def buffer(self) -> str:
        """Unconsumed text, including any pending record."""
        if self._pending is None:
            return self._buffer
        return f"{self._pending}\n{self._buffer}" if self._buffer else self._pending

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        """Append a chunk and return every event completed by it."""
        if self._finished:
            raise RuntimeError("feed() called after flush()")
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []

        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._consume(lines)

    def flush(self) -> list[StreamEvent]:
        """End of stream: treat the remaining text as a final complete line."""
        if self._finished:
            return []
        self._finished = True

        self._buffer += self._decoder.decode(b"", final=True)
        lines = [self._buffer] if self._buffer else []
        self._buffer = ""
        events = self._consume(lines)

        if self._pending is not None:
            logger.warning("Discarding truncated record at end of stream (%d chars)", len(self._pending))
            self._pending = None
        return events

    def _consume(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for raw in lines:
            line = raw.rstrip("\r")
            stripped = line.strip()

            if self._pending is not None:
                joined = f"{self._pending}\n{line}"
                record = _decode(joined)
                if record is not None:
                    self._pending = None
                    self._emit(record, events)
                    continue

                # A line that is a complete event on its own starts a new record.
                # Typeless JSON is treated as content of the pending one.
                body = _strip_prefix(stripped)
                record = _decode(body) if body is not None else None
                if record is not None and StreamEvent.from_record(record) is not None:
                    logger.debug("Abandoning unterminated record (%d chars)", len(self._pending))
                    self._pending = None
                    self._emit(record, events)
                    continue

                if len(joined) > MAX_PENDING_CHARS:
                    logger.warning("Pending record exceeded %d chars, dropped", MAX_PENDING_CHARS)
                    self._pending = None
                else:
                    self._pending = joined
                continue

            body = _strip_prefix(stripped)
            if body is None:
                if stripped:
                    self.dropped_lines += 1
                    logger.debug("Ignoring non-record line: %.80s", stripped)
                continue

            if body.strip() == DONE_SENTINEL:
                continue

            record = _decode(body)
            if record is None:
                self._pending = body
            else:
                self._emit(record, events)
        return events

    def _emit(self, record: dict, events: list[StreamEvent]) -> None:
        event = StreamEvent.from_record(record)
        if event is None:
            logger.debug("Ignoring record with unknown type: %r", record.get("type"))
            return
        self.emitted += 1
        events.append(event)


async def reconstruct(chunks: AsyncIterable[str | bytes]) -> AsyncIterator[StreamEvent]:
    """Async wrapper: yield events from an async chunk source as they complete."""
    rec = StreamReconstructor()
    async for chunk in chunks:
        for event in rec.feed(chunk):
            yield event
    for event in rec.flush():
        yield event
