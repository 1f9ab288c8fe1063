import asyncio
import json
from types import SimpleNamespace

import pytest

from streamnorm.normalizer.encoder import CanonicalEncoder, error_body
from streamnorm.normalizer.errors import UpstreamStreamError
from streamnorm.normalizer.pipeline import StreamMode, StreamNormalizer, anormalize_stream, normalize_stream


def _texts(output):
    texts = []
    for block in b"".join(output).split(b"\n\n"):
        if not block:
            continue
        assert block.startswith(b"data: ")
        texts.append(json.loads(block[len(b"data: ") :])["response"])
    return texts


def _sse(payload):
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def test_split_payload_emits_single_canonical_event():
    chunks = [b'data: {"response":"Hel', b'lo"}\n\n', b"data: [DONE]"]
    output = list(normalize_stream(chunks))

    assert output == [b'data: {"response":"Hello"}\n\n']


def test_reasoning_then_deltas_then_completed_snapshot():
    chunks = [
        _sse({"type": "response.reasoning_text.delta", "delta": "Let me think"}),
        _sse({"type": "response.output_text.delta", "delta": "A"}),
        _sse({"type": "response.output_text.delta", "delta": "B"}),
        _sse(
            {
                "type": "response.completed",
                "response": {"output": [{"type": "message", "content": [{"text": "AB"}]}]},
            }
        ),
    ]
    output = list(normalize_stream(chunks))

    assert _texts(output) == ["A", "B"]
    assert len(output) == 2


def test_chunking_does_not_change_canonical_output():
    stream = b"".join(
        [
            b"event: response.output_text.delta\n",
            _sse({"type": "response.output_text.delta", "delta": "Caf\u00e9 "}),
            _sse({"choices": [{"delta": {"content": "\u4f60\u597d"}}]}),
            b"data: [DONE]\n\n",
        ]
    )
    whole = list(normalize_stream([stream]))
    single_bytes = list(normalize_stream([stream[i : i + 1] for i in range(len(stream))]))

    assert single_bytes == whole
    assert _texts(whole) == ["Caf\u00e9 ", "\u4f60\u597d"]


def test_non_json_payload_discarded_in_strict_mode_and_forwarded_otherwise():
    chunks = [b"data: not json at all\n\n", _sse({"response": "ok"})]

    assert _texts(normalize_stream(chunks)) == ["ok"]

    lenient = SimpleNamespace(strict_json=False)
    assert _texts(normalize_stream(chunks, normalizer_cfg=lenient)) == ["not json at all", "ok"]


def test_sentinel_stops_upstream_consumption():
    pulled = []

    def upstream():
        for chunk in [_sse({"response": "x"}), b"data: [DONE]\n\n", _sse({"response": "late"})]:
            pulled.append(chunk)
            yield chunk

    assert _texts(normalize_stream(upstream())) == ["x"]
    assert len(pulled) == 2


def test_passthrough_mode_is_verbatim():
    chunks = [b"event: x\n", b"data: {\"anything\": 1}\n\n", b"data: [DONE]\n\n"]
    assert list(normalize_stream(chunks, mode="passthrough")) == chunks


def test_closing_consumer_closes_upstream():
    state = {"closed": False, "pulled": 0}

    def upstream():
        try:
            while True:
                state["pulled"] += 1
                yield _sse({"response": "tick"})
        finally:
            state["closed"] = True

    stream = normalize_stream(upstream())
    assert next(stream) == CanonicalEncoder().encode("tick")
    stream.close()

    assert state["closed"] is True
    assert state["pulled"] == 1


def test_upstream_failure_is_surfaced_as_terminal_error():
    def upstream():
        yield _sse({"response": "partial"})
        raise ConnectionResetError("peer went away")

    stream = normalize_stream(upstream())
    assert _texts([next(stream)]) == ["partial"]
    with pytest.raises(UpstreamStreamError) as excinfo:
        next(stream)

    assert isinstance(excinfo.value.__cause__, ConnectionResetError)
    assert json.loads(error_body()) == {"error": "Failed to process request"}


def test_async_driver_matches_sync_driver():
    chunks = [b'data: {"response":"Hel', b'lo"}\n\n', b"data: [DONE]"]

    async def upstream():
        for chunk in chunks:
            yield chunk

    async def collect():
        return [encoded async for encoded in anormalize_stream(upstream())]

    assert asyncio.run(collect()) == list(normalize_stream(chunks))


def test_async_upstream_failure():
    async def upstream():
        yield _sse({"response": "a"})
        raise OSError("reset")

    async def collect():
        return [encoded async for encoded in anormalize_stream(upstream())]

    with pytest.raises(UpstreamStreamError):
        asyncio.run(collect())


def test_normalizer_instances_do_not_share_state():
    first = StreamNormalizer()
    second = StreamNormalizer()

    first.feed(_sse({"response": "one"}))
    assert first.visible_text == "one"
    assert second.visible_text == ""


def test_stream_mode_parsing():
    assert StreamMode.from_value(None) == StreamMode.NORMALIZE
    assert StreamMode.from_value(" Passthrough ") == StreamMode.PASSTHROUGH
    with pytest.raises(ValueError):
        StreamMode.from_value("turbo")


def test_canonical_envelope_is_byte_stable():
    assert CanonicalEncoder().encode('say "hi"\n\u00e9') == 'data: {"response":"say \\"hi\\"\\n\u00e9"}\n\n'.encode(
        "utf-8"
    )


def test_completed_snapshot_never_forwards_reasoning_items():
    chunks = [
        _sse({"type": "response.reasoning_text.delta", "delta": "thinking"}),
        _sse({"type": "response.output_text.delta", "delta": "A"}),
        _sse({"type": "response.output_text.delta", "delta": "B"}),
        _sse(
            {
                "type": "response.completed",
                "response": {
                    "output": [
                        {
                            "type": "reasoning",
                            "content": [{"type": "reasoning_text", "text": "SECRET PLAN of the model"}],
                        },
                        {"type": "message", "content": [{"type": "output_text", "text": "AB"}]},
                    ]
                },
            }
        ),
    ]

    assert _texts(normalize_stream(chunks)) == ["A", "B"]


def test_snapshot_after_suppressed_role_prefix_keeps_text_intact():
    chunks = [
        _sse({"response": "Assistant: "}),
        _sse({"response": "Hello"}),
        _sse({"type": "response.completed", "response": {"output": [{"text": "Assistant: Hello, here is the full answer."}]}}),
    ]

    assert "".join(_texts(normalize_stream(chunks))) == "Hello, here is the full answer."


def test_deeply_nested_payloads_are_discarded_and_stream_continues():
    too_deep_to_decode = b"data: " + b"[" * 100000 + b"\n\n"
    deep_content = (
        b'data: {"choices":[{"delta":{"content":' + b"[" * 3000 + b'"x"' + b"]" * 3000 + b"}}]}\n\n"
    )
    chunks = [too_deep_to_decode, deep_content, _sse({"response": "after"})]

    assert _texts(normalize_stream(chunks)) == ["after"]
    assert _texts(normalize_stream(chunks, normalizer_cfg=SimpleNamespace(strict_json=False))) == ["after"]


def test_lenient_mode_keeps_whitespace_in_literal_text():
    chunks = [b"data:   indented  \n\n", b"data: [DONE] \n\n", _sse({"response": "late"})]
    lenient = SimpleNamespace(strict_json=False)

    assert _texts(normalize_stream(chunks, normalizer_cfg=lenient)) == ["  indented  "]
