"""Line-delimited JSON-RPC 2.0 transport for the streamnorm worker."""

from __future__ import annotations

import json
import logging
import sys
import threading
import zlib
from concurrent.futures import Future, ThreadPoolExecutor
from io import TextIOBase
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from streamnorm.protocol.schema import parse_method_params
from streamnorm.protocol.types import RpcError, RpcErrorResponse, RpcRequest, RpcSuccessResponse

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]
RpcHandler = Callable[[BaseModel], Any]

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RpcMethodError(RuntimeError):
    """Application error mapped to JSON-RPC response codes."""

    def __init__(self, *, code: int, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class StreamLanes:
    """Single-thread executors picked by stream id.

    Work for one key always lands on the same lane, so a stream's requests
    complete in the order they were read while other streams run alongside.
    """

    def __init__(self, count: int = 8) -> None:
        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"streamnorm-lane{index}")
            for index in range(max(1, int(count)))
        ]

    def __len__(self) -> int:
        return len(self._executors)

    def lane_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._executors)

    def submit(self, key: str, fn: Callable[..., Any], *args: Any) -> Future:
        return self._executors[self.lane_for(key)].submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        for executor in self._executors:
            executor.shutdown(wait=wait)


def _result_payload(result: Any) -> JsonDict:
    if isinstance(result, BaseModel):
        return result.model_dump()
    if isinstance(result, dict):
        return result
    if result is None:
        return {}
    return {"value": result}


def _validation_details(exc: ValidationError) -> JsonDict:
    return {"errors": exc.errors(include_url=False, include_context=False)}


class StdioJsonRpcServer:
    """Serve registered stream handlers over newline-delimited JSON on stdio.

    Requests carrying a ``stream_id`` run on that stream's lane; the rest are
    spread across lanes by request id.
    """

    def __init__(
        self,
        *,
        stdin: Optional[TextIOBase] = None,
        stdout: Optional[TextIOBase] = None,
        lanes: int = 8,
    ) -> None:
        self._handlers: Dict[str, RpcHandler] = {}
        self._running = False
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._lane_count = max(1, int(lanes))
        self._write_lock = threading.Lock()

    def register(self, name: str, handler: RpcHandler) -> None:
        if not name.strip():
            raise ValueError("RPC method name cannot be empty")
        self._handlers[name] = handler

    def send_raw(self, payload: JsonDict) -> None:
        wire = json.dumps(payload, ensure_ascii=True, separators=(",", ":"))
        with self._write_lock:
            self._stdout.write(wire + "\n")
            self._stdout.flush()

    def send_error(
        self,
        *,
        code: int,
        message: str,
        request_id: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        response = RpcErrorResponse(id=request_id, error=RpcError(code=code, message=message, data=data))
        self.send_raw(response.model_dump())

    def read_request(self, line: str) -> Optional[RpcRequest]:
        """Decode one input line; protocol errors are answered here and yield ``None``."""
        raw = line.strip()
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            self.send_error(code=PARSE_ERROR, message="Parse error", data={"error": str(exc)})
            return None
        try:
            return RpcRequest.model_validate(payload)
        except ValidationError as exc:
            self.send_error(code=INVALID_REQUEST, message="Invalid Request", data=_validation_details(exc))
            return None

    def handle(self, request: RpcRequest) -> None:
        handler = self._handlers.get(request.method)
        if handler is None:
            self.send_error(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}", request_id=request.id)
            return

        try:
            params = parse_method_params(request.method, request.params)
        except ValidationError as exc:
            self.send_error(
                code=INVALID_PARAMS,
                message="Invalid params",
                request_id=request.id,
                data=_validation_details(exc),
            )
            return
        except ValueError as exc:
            self.send_error(code=METHOD_NOT_FOUND, message=str(exc), request_id=request.id)
            return

        try:
            result = _result_payload(handler(params))
        except RpcMethodError as exc:
            self.send_error(code=exc.code, message=exc.message, request_id=request.id, data=exc.data)
            return
        except Exception as exc:  # pragma: no cover - integration failure path
            logger.exception("RPC handler failed for method=%s stream=%s", request.method, request.stream_id)
            self.send_error(
                code=INTERNAL_ERROR,
                message="Internal error",
                request_id=request.id,
                data={"method": request.method, "error": str(exc)},
            )
            return
        self.send_raw(RpcSuccessResponse(id=request.id, result=result).model_dump())

    def run_forever(self) -> None:
        self._running = True
        lanes = StreamLanes(self._lane_count)
        try:
            while self._running:
                line = self._stdin.readline()
                if line == "":
                    break
                request = self.read_request(line)
                if request is not None:
                    lanes.submit(request.stream_id or str(request.id), self.handle, request)
        finally:
            lanes.shutdown(wait=True)

    def shutdown(self) -> None:
        self._running = False
