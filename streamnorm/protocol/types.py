"""Core protocol types for streamnorm worker communication."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

PROTOCOL_VERSION = "1.0.0"

JsonRpcId = Union[str, int]

EventType = Literal[
    "stream.opened",
    "stream.fragment",
    "stream.closed",
    "stream.cancelled",
    "stream.error",
]

TERMINAL_EVENT_TYPES = frozenset({"stream.closed", "stream.cancelled", "stream.error"})


class RpcRequest(BaseModel):
    """Incoming JSON-RPC 2.0 request."""

    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"] = "2.0"
    id: JsonRpcId
    method: str = Field(min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def stream_id(self) -> Optional[str]:
        value = self.params.get("stream_id")
        return value if isinstance(value, str) and value else None


class RpcError(BaseModel):
    """JSON-RPC error object."""

    model_config = ConfigDict(extra="forbid")

    code: int
    message: str
    data: Optional[Dict[str, Any]] = None


class RpcSuccessResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"] = "2.0"
    id: JsonRpcId
    result: Dict[str, Any]


class RpcErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[JsonRpcId] = None
    error: RpcError


class EventEnvelope(BaseModel):
    """Per-stream event emitted alongside RPC responses."""

    model_config = ConfigDict(extra="forbid")

    stream_id: str = Field(min_length=1)
    seq: int = Field(ge=1)
    ts_ms: int = Field(ge=0)
    event_type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventFrame(BaseModel):
    """Wire frame for emitted events."""

    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"] = "2.0"
    method: Literal["event"] = "event"
    params: EventEnvelope
