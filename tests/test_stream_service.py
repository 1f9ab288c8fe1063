import base64
import io
import json

import pytest

from streamnorm.app.stream_service import STREAM_FAILED_CODE, UNKNOWN_STREAM_CODE, StreamService, run_worker
from streamnorm.config import Config
from streamnorm.protocol.events import EventEmitter
from streamnorm.protocol.rpc_server import RpcMethodError
from streamnorm.protocol.schema import (
    HandshakeParams,
    StreamCancelParams,
    StreamCloseParams,
    StreamFeedParams,
    StreamOpenParams,
)


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


@pytest.fixture
def config(tmp_path):
    return Config(config_path=tmp_path / "missing.yaml")


def test_open_feed_close_normalizes_and_releases(config):
    events = []
    service = StreamService(config=config, emitter=EventEmitter(send=events.append))

    opened = service.open(StreamOpenParams())
    first = service.feed(StreamFeedParams(stream_id=opened.stream_id, data=_b64(b'data: {"response":"Hel')))
    second = service.feed(StreamFeedParams(stream_id=opened.stream_id, data=_b64(b'lo"}\n\ndata: [DONE]')))
    closed = service.close(StreamCloseParams(stream_id=opened.stream_id))

    assert base64.b64decode(first.output) == b""
    assert base64.b64decode(second.output) == b'data: {"response":"Hello"}\n\n'
    assert closed.finished is True
    assert service.open_stream_ids == []

    kinds = [frame["params"]["event_type"] for frame in events]
    assert kinds == ["stream.opened", "stream.fragment", "stream.closed"]


def test_passthrough_stream_returns_bytes_verbatim(config):
    service = StreamService(config=config)
    opened = service.open(StreamOpenParams(mode="passthrough"))
    raw = b"event: x\ndata: {\"choices\":[]}\n\n"

    result = service.feed(StreamFeedParams(stream_id=opened.stream_id, data=_b64(raw)))

    assert opened.mode == "passthrough"
    assert base64.b64decode(result.output) == raw


def test_cancel_releases_without_flushing(config):
    service = StreamService(config=config)
    opened = service.open(StreamOpenParams())
    service.feed(StreamFeedParams(stream_id=opened.stream_id, data=_b64(b'data: {"response":"x"}')))

    assert service.cancel(StreamCancelParams(stream_id=opened.stream_id)) == {
        "stream_id": opened.stream_id,
        "cancelled": True,
    }
    with pytest.raises(RpcMethodError) as excinfo:
        service.close(StreamCloseParams(stream_id=opened.stream_id))
    assert excinfo.value.code == UNKNOWN_STREAM_CODE


def test_streams_are_isolated(config):
    service = StreamService(config=config)
    a = service.open(StreamOpenParams())
    b = service.open(StreamOpenParams())

    service.feed(StreamFeedParams(stream_id=a.stream_id, data=_b64(b'data: {"response":"..."}\n\n')))
    out_b = service.feed(StreamFeedParams(stream_id=b.stream_id, data=_b64(b'data: {"response":"B"}\n\n')))

    assert base64.b64decode(out_b.output) == b'data: {"response":"B"}\n\n'
    assert a.stream_id != b.stream_id


def test_handshake_rejects_other_major_versions(config):
    service = StreamService(config=config)
    assert service.handshake(HandshakeParams(protocol_version="1.4.0")).server_name == "streamnorm-worker"
    with pytest.raises(RpcMethodError):
        service.handshake(HandshakeParams(protocol_version="2.0.0"))


def test_worker_round_trip_over_stdio(config):
    stdin = io.StringIO(
        '{"jsonrpc":"2.0","id":1,"method":"app.handshake","params":{"protocol_version":"1.0.0"}}\n'
        '{"jsonrpc":"2.0","id":2,"method":"stream.open","params":{}}\n'
    )
    stdout = io.StringIO()
    run_worker(config=config, stdin=stdin, stdout=stdout)

    frames = [json.loads(line) for line in stdout.getvalue().splitlines()]
    results = {frame["id"]: frame["result"] for frame in frames if "id" in frame and "result" in frame}
    assert results[1]["protocol_version"] == "1.0.0"
    assert results[2]["stream_id"].startswith("stream_")
    assert any(frame.get("method") == "event" for frame in frames)


def test_cancel_emits_cancelled_event(config):
    events = []
    service = StreamService(config=config, emitter=EventEmitter(send=events.append))
    opened = service.open(StreamOpenParams())

    service.cancel(StreamCancelParams(stream_id=opened.stream_id))

    assert [frame["params"]["event_type"] for frame in events] == ["stream.opened", "stream.cancelled"]


def test_processing_failure_emits_error_event_and_releases(config):
    events = []
    service = StreamService(config=config, emitter=EventEmitter(send=events.append))
    opened = service.open(StreamOpenParams())
    session = service._get(opened.stream_id)

    def _explode(_chunk):
        raise RuntimeError("decoder state corrupted")

    session.normalizer.feed = _explode

    with pytest.raises(RpcMethodError) as excinfo:
        service.feed(StreamFeedParams(stream_id=opened.stream_id, data=_b64(b"data: {}\n\n")))

    assert excinfo.value.code == STREAM_FAILED_CODE
    assert excinfo.value.message == "Failed to process request"
    assert service.open_stream_ids == []
    assert events[-1]["params"]["event_type"] == "stream.error"
    assert events[-1]["params"]["payload"] == {"message": "decoder state corrupted"}
