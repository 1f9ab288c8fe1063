"""Per-stream lifecycle events sent alongside worker RPC responses."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from streamnorm.protocol.types import TERMINAL_EVENT_TYPES, EventEnvelope, EventFrame, EventType


class EventEmitter:
    """Number and send lifecycle events for each open stream.

    Sequence numbers start at 1 for every stream id and are dropped once a
    terminal event (closed, cancelled or error) has been sent for it.
    """

    def __init__(self, send: Callable[[dict], None], *, clock: Callable[[], float] = time.time) -> None:
        self._send = send
        self._clock = clock
        self._lock = threading.Lock()
        self._seq_by_stream: Dict[str, int] = {}

    @property
    def tracked_streams(self) -> List[str]:
        with self._lock:
            return sorted(self._seq_by_stream)

    def _next_seq(self, stream_id: str, terminal: bool) -> int:
        with self._lock:
            seq = self._seq_by_stream.get(stream_id, 0) + 1
            if terminal:
                self._seq_by_stream.pop(stream_id, None)
            else:
                self._seq_by_stream[stream_id] = seq
            return seq

    def emit(self, *, stream_id: str, event_type: EventType, payload: Optional[dict] = None) -> EventEnvelope:
        envelope = EventEnvelope(
            stream_id=stream_id,
            seq=self._next_seq(stream_id, event_type in TERMINAL_EVENT_TYPES),
            ts_ms=int(self._clock() * 1000),
            event_type=event_type,
            payload=payload or {},
        )
        self._send(EventFrame(params=envelope).model_dump())
        return envelope

    def opened(self, stream_id: str, mode: str) -> EventEnvelope:
        return self.emit(stream_id=stream_id, event_type="stream.opened", payload={"mode": mode})

    def fragments(self, stream_id: str, output: Iterable[bytes]) -> int:
        """Send one ``stream.fragment`` per encoded output event."""
        count = 0
        for encoded in output:
            self.emit(stream_id=stream_id, event_type="stream.fragment", payload={"bytes": len(encoded)})
            count += 1
        return count

    def closed(self, stream_id: str, visible_chars: int) -> EventEnvelope:
        return self.emit(stream_id=stream_id, event_type="stream.closed", payload={"visible_chars": visible_chars})

    def cancelled(self, stream_id: str) -> EventEnvelope:
        return self.emit(stream_id=stream_id, event_type="stream.cancelled")

    def failed(self, stream_id: str, message: str) -> EventEnvelope:
        return self.emit(stream_id=stream_id, event_type="stream.error", payload={"message": message})
