import io
import json
import threading
import time

from streamnorm.protocol.rpc_server import RpcMethodError, StdioJsonRpcServer, StreamLanes

HANDSHAKE = '{"jsonrpc":"2.0","id":%d,"method":"app.handshake","params":{"protocol_version":"1.0.0"}}\n'


def _run_once(input_lines: str, register_fn):
    stdin = io.StringIO(input_lines)
    stdout = io.StringIO()
    server = StdioJsonRpcServer(stdin=stdin, stdout=stdout)
    register_fn(server)
    server.run_forever()
    return [json.loads(line) for line in stdout.getvalue().splitlines() if line.strip()]


def test_rpc_server_success_response() -> None:
    def _register(server: StdioJsonRpcServer) -> None:
        server.register("app.handshake", lambda params: {"ok": params.protocol_version == "1.0.0"})

    responses = _run_once(HANDSHAKE % 1, _register)
    assert responses[0]["id"] == 1
    assert responses[0]["result"]["ok"] is True


def test_rpc_server_application_error_mapping() -> None:
    def _register(server: StdioJsonRpcServer) -> None:
        def _handler(_params):
            raise RpcMethodError(code=-32004, message="Unknown stream: s9")

        server.register("app.handshake", _handler)

    responses = _run_once(HANDSHAKE % 9, _register)
    assert responses[0]["id"] == 9
    assert responses[0]["error"]["code"] == -32004


def test_rpc_server_parse_and_validation_errors() -> None:
    def _register(server: StdioJsonRpcServer) -> None:
        server.register("stream.feed", lambda params: {})

    responses = _run_once(
        "{bad json\n"
        '{"jsonrpc":"2.0","method":"stream.feed"}\n'
        '{"jsonrpc":"2.0","id":3,"method":"stream.feed","params":{"stream_id":"s","data":"%%%"}}\n'
        '{"jsonrpc":"2.0","id":4,"method":"nope","params":{}}\n',
        _register,
    )
    codes = sorted(response["error"]["code"] for response in responses)
    assert codes == [-32700, -32602, -32601, -32600]


def test_rpc_server_keeps_per_stream_order() -> None:
    seen = []
    lock = threading.Lock()

    def _register(server: StdioJsonRpcServer) -> None:
        def _handler(params):
            # Earlier chunks sleep longer; a concurrent dispatch would reorder them.
            time.sleep(0.05 if params.data == "MQ==" else 0.0)
            with lock:
                seen.append(params.data)
            return {}

        server.register("stream.feed", _handler)

    lines = "".join(
        '{"jsonrpc":"2.0","id":%d,"method":"stream.feed","params":{"stream_id":"s1","data":"%s"}}\n' % (index, data)
        for index, data in enumerate(["MQ==", "Mg==", "Mw=="], start=1)
    )
    _run_once(lines, _register)

    assert seen == ["MQ==", "Mg==", "Mw=="]


def test_stream_lanes_route_one_key_to_one_lane() -> None:
    lanes = StreamLanes(4)
    try:
        assert len(lanes) == 4
        assert lanes.lane_for("stream_abc") == lanes.lane_for("stream_abc")
        assert 0 <= lanes.lane_for("other") < 4

        thread_names = {lanes.submit("stream_abc", lambda: threading.current_thread().name).result() for _ in range(5)}
        assert len(thread_names) == 1
    finally:
        lanes.shutdown()
