"""Incremental Server-Sent Events parser for upstream chat-completion streams.

Bytes are buffered until a full line is available, so events (and multi-byte
UTF-8 characters) split across network chunks are framed exactly as if the
whole stream had arrived at once.

Framing:
- ``event:``, ``data:``, ``id:`` and ``retry:`` fields, one optional space
  after the colon, ``\\r\\n`` or ``\\n`` line endings, ``:`` comment lines
- a blank line dispatches the pending event; multiple ``data:`` lines are
  joined with ``\\n`` and decoded as one JSON document
- ``data: [DONE]`` dispatches any pending event, then a synthetic ``done``
  event, immediately

Usage:
    parser = SSEParser()
    async for chunk in response.content.iter_any():
        for event in parser.parse(chunk):
            ...
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from glmt.errors import SSEBufferOverflowError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024  # 1MB
DONE_EVENT = "done"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEEvent:
    """One framed SSE event with its JSON payload already decoded."""

    event: str
    data: Any
    index: int = 0  # 1-based position in the stream
    id: str | None = None
    retry: int | None = None

    @property
    def is_done(self) -> bool:
        return self.event == DONE_EVENT


class SSEParser:
    """Stateful SSE framer. Create one per upstream stream, or ``reset()`` it."""

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE):
        self.max_buffer_size = max_buffer_size
        self._buffer = bytearray()
        self._event_count = 0
        self._clear_pending()

    def _clear_pending(self) -> None:
        self._event_name = "message"
        self._data_lines: list[str] = []
        self._data_size = 0
        self._event_id: str | None = None
        self._retry: int | None = None

    @property
    def buffered_bytes(self) -> int:
        """Bytes held across calls: the partial line plus undispatched data."""
        return len(self._buffer) + self._data_size

    def parse(self, chunk: bytes | str) -> list[SSEEvent]:
        """Feed one chunk and return every event it completes.

        Raises:
            SSEBufferOverflowError: If the retained data exceeds max_buffer_size.
        """
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer.extend(chunk)

        *lines, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)

        events: list[SSEEvent] = []
        for raw in lines:
            events.extend(self._process_line(raw.decode("utf-8", errors="replace").rstrip("\r")))

        # DoS protection: an upstream that never terminates a line or an event
        if self.buffered_bytes > self.max_buffer_size:
            raise SSEBufferOverflowError(
                f"SSE buffer exceeded {self.max_buffer_size} bytes (DoS protection)"
            )

        return events

    def _process_line(self, line: str) -> list[SSEEvent]:
        if not line:
            event = self._dispatch()
            return [event] if event is not None else []

        if line.startswith(":"):
            return []

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event_name = value.strip()
        elif field == "data":
            if value == DONE_SENTINEL:
                # Data lines still pending belong to an event missing its blank line
                pending = self._dispatch()
                self._event_count += 1
                done = SSEEvent(event=DONE_EVENT, data=None, index=self._event_count)
                return [pending, done] if pending is not None else [done]
            self._data_lines.append(value)
            self._data_size += len(value.encode("utf-8")) + 1
        elif field == "id":
            self._event_id = value.strip()
        elif field == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                logger.debug("Ignoring non-integer retry field: %r", value[:20])
        return []

    def _dispatch(self) -> SSEEvent | None:
        if not self._data_lines:
            self._clear_pending()
            return None

        data = "\n".join(self._data_lines)
        event_name, event_id, retry = self._event_name, self._event_id, self._retry
        self._clear_pending()

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Malformed JSON event skipped: %s", e)
            logger.debug("Malformed event data: %s", data[:100])
            return None

        self._event_count += 1
        return SSEEvent(
            event=event_name,
            data=payload,
            index=self._event_count,
            id=event_id,
            retry=retry,
        )

    def reset(self) -> None:
        """Reset parser state for reuse on another stream."""
        self._buffer = bytearray()
        self._event_count = 0
        self._clear_pending()
