"""Re-synchronize chunked upstream bytes on blank-line event boundaries."""

from __future__ import annotations

import codecs
import logging
import re
from typing import List, Optional

from streamnorm.normalizer.types import LogicalEvent

logger = logging.getLogger(__name__)

_EVENT_BOUNDARY = re.compile(r"\r?\n\r?\n")
_LINE_BREAK = re.compile(r"\r?\n")


def _to_event(block: str) -> LogicalEvent:
    return LogicalEvent(lines=tuple(_LINE_BREAK.split(block)))


class FrameReassembler:
    """Incremental event framer for one upstream stream.

    The buffer holds at most one unterminated event between calls.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._closed = False

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> List[LogicalEvent]:
        """Append a raw chunk and return every event it completes."""
        if self._closed:
            raise RuntimeError("reassembler already flushed")
        if not chunk:
            return []

        self._buffer += self._decoder.decode(chunk)

        events: List[LogicalEvent] = []
        while True:
            match = _EVENT_BOUNDARY.search(self._buffer)
            if match is None:
                break
            block = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end() :]
            event = _to_event(block)
            if not event.is_empty:
                events.append(event)
        return events

    def flush(self) -> Optional[LogicalEvent]:
        """Return the unterminated residual as a final event, if any."""
        if self._closed:
            return None
        self._closed = True

        self._buffer += self._decoder.decode(b"", final=True)
        residual, self._buffer = self._buffer, ""
        # A trailing single line break is not a boundary but carries nothing.
        residual = residual.rstrip("\r\n")
        if not residual.strip():
            return None

        logger.debug("Flushing unterminated upstream event (%d chars)", len(residual))
        return _to_event(residual)
