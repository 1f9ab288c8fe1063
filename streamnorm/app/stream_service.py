"""Per-stream session registry served over the worker protocol."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from streamnorm.normalizer.encoder import PassthroughEncoder
from streamnorm.normalizer.pipeline import StreamMode, StreamNormalizer
from streamnorm.protocol.events import EventEmitter
from streamnorm.protocol.rpc_server import RpcMethodError, StdioJsonRpcServer
from streamnorm.protocol.schema import (
    HandshakeParams,
    HandshakeResult,
    StreamCancelParams,
    StreamCloseParams,
    StreamFeedParams,
    StreamOpenParams,
    StreamOpenResult,
    StreamOutputResult,
)
from streamnorm.protocol.types import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

UNKNOWN_STREAM_CODE = -32004
PROTOCOL_MISMATCH_CODE = -32010
STREAM_FAILED_CODE = -32020


@dataclass
class StreamSession:
    """One in-flight stream and the lock guarding its state."""

    stream_id: str
    mode: StreamMode
    normalizer: Optional[StreamNormalizer] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class StreamService:
    """Open, feed and release normalization streams."""

    def __init__(self, *, config, emitter: Optional[EventEmitter] = None) -> None:
        self.config = config
        self.emitter = emitter
        self._sessions: Dict[str, StreamSession] = {}
        self._registry_lock = threading.Lock()
        self._passthrough = PassthroughEncoder()

    @property
    def open_stream_ids(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._sessions)

    def _get(self, stream_id: str) -> StreamSession:
        with self._registry_lock:
            session = self._sessions.get(stream_id)
        if session is None:
            raise RpcMethodError(
                code=UNKNOWN_STREAM_CODE,
                message=f"Unknown stream: {stream_id}",
                data={"stream_id": stream_id},
            )
        return session

    def _release(self, stream_id: str) -> Optional[StreamSession]:
        with self._registry_lock:
            return self._sessions.pop(stream_id, None)

    def _fail(self, session: StreamSession, exc: Exception) -> RpcMethodError:
        logger.exception("Stream %s failed", session.stream_id)
        self._release(session.stream_id)
        if self.emitter is not None:
            self.emitter.failed(session.stream_id, str(exc))
        return RpcMethodError(
            code=STREAM_FAILED_CODE,
            message="Failed to process request",
            data={"stream_id": session.stream_id},
        )

    def handshake(self, params: HandshakeParams) -> HandshakeResult:
        if params.protocol_version.split(".")[0] != PROTOCOL_VERSION.split(".")[0]:
            raise RpcMethodError(
                code=PROTOCOL_MISMATCH_CODE,
                message="Unsupported protocol version",
                data={"expected": PROTOCOL_VERSION, "received": params.protocol_version},
            )
        return HandshakeResult()

    def open(self, params: StreamOpenParams) -> StreamOpenResult:
        mode = StreamMode.from_value(params.mode)
        stream_id = f"stream_{uuid.uuid4().hex[:12]}"
        normalizer = StreamNormalizer(self.config.normalizer) if mode == StreamMode.NORMALIZE else None
        session = StreamSession(stream_id=stream_id, mode=mode, normalizer=normalizer)
        with self._registry_lock:
            self._sessions[stream_id] = session

        logger.info("Opened stream %s mode=%s", stream_id, mode.value)
        if self.emitter is not None:
            self.emitter.opened(stream_id, mode.value)
        return StreamOpenResult(stream_id=stream_id, mode=mode.value)

    def feed(self, params: StreamFeedParams) -> StreamOutputResult:
        session = self._get(params.stream_id)
        chunk = params.chunk()
        with session.lock:
            try:
                if session.normalizer is None:
                    output = [self._passthrough.encode(chunk)] if chunk else []
                    finished = False
                else:
                    output = session.normalizer.feed(chunk)
                    finished = session.normalizer.finished
            except Exception as exc:
                raise self._fail(session, exc) from exc

        if self.emitter is not None:
            self.emitter.fragments(session.stream_id, output)
        return StreamOutputResult.from_bytes(session.stream_id, b"".join(output), finished=finished)

    def close(self, params: StreamCloseParams) -> StreamOutputResult:
        session = self._get(params.stream_id)
        with session.lock:
            try:
                output = session.normalizer.finish() if session.normalizer is not None else []
            except Exception as exc:
                raise self._fail(session, exc) from exc
            visible_chars = len(session.normalizer.visible_text) if session.normalizer is not None else 0

        self._release(session.stream_id)
        if self.emitter is not None:
            self.emitter.fragments(session.stream_id, output)
            self.emitter.closed(session.stream_id, visible_chars)
        logger.info("Closed stream %s visible_chars=%d", session.stream_id, visible_chars)
        return StreamOutputResult.from_bytes(session.stream_id, b"".join(output), finished=True)

    def cancel(self, params: StreamCancelParams) -> Dict[str, Any]:
        """Drop a stream whose consumer went away; nothing is flushed."""
        session = self._release(params.stream_id)
        if session is None:
            return {"stream_id": params.stream_id, "cancelled": False}
        if self.emitter is not None:
            self.emitter.cancelled(params.stream_id)
        logger.info("Cancelled stream %s", params.stream_id)
        return {"stream_id": params.stream_id, "cancelled": True}

    def register(self, server: StdioJsonRpcServer) -> None:
        server.register("app.handshake", self.handshake)
        server.register("stream.open", self.open)
        server.register("stream.feed", self.feed)
        server.register("stream.close", self.close)
        server.register("stream.cancel", self.cancel)


def run_worker(*, config, stdin=None, stdout=None) -> None:
    """Serve the worker protocol until stdin closes."""
    server = StdioJsonRpcServer(stdin=stdin, stdout=stdout)
    service = StreamService(config=config, emitter=EventEmitter(send=server.send_raw))
    service.register(server)
    server.run_forever()
