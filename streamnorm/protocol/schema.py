"""Method parameter schemas for the streamnorm worker protocol."""

from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from streamnorm.protocol.types import PROTOCOL_VERSION


class HandshakeParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    protocol_version: str = Field(min_length=1)
    client_name: Optional[str] = None


class HandshakeResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    protocol_version: str = PROTOCOL_VERSION
    server_name: str = "streamnorm-worker"
    supported_modes: List[str] = ["normalize", "passthrough"]
    features: Dict[str, bool] = {"events": True, "cancel": True}


class StreamOpenParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: str = Field(default="normalize", pattern=r"^(normalize|passthrough)$")


class StreamOpenResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stream_id: str
    mode: str


class StreamFeedParams(BaseModel):
    """One upstream chunk, base64-encoded so arbitrary bytes survive JSON."""

    model_config = ConfigDict(extra="forbid")

    stream_id: str = Field(min_length=1)
    data: str = ""

    @field_validator("data")
    @classmethod
    def _check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValueError("data must be base64-encoded") from exc
        return value

    def chunk(self) -> bytes:
        return base64.b64decode(self.data.encode("ascii"))


class StreamOutputResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stream_id: str
    output: str = ""
    finished: bool = False

    @classmethod
    def from_bytes(cls, stream_id: str, output: bytes, *, finished: bool = False) -> "StreamOutputResult":
        return cls(
            stream_id=stream_id,
            output=base64.b64encode(output).decode("ascii"),
            finished=finished,
        )


class StreamCloseParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stream_id: str = Field(min_length=1)


class StreamCancelParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stream_id: str = Field(min_length=1)


METHOD_PARAM_MODELS: Dict[str, Type[BaseModel]] = {
    "app.handshake": HandshakeParams,
    "stream.open": StreamOpenParams,
    "stream.feed": StreamFeedParams,
    "stream.close": StreamCloseParams,
    "stream.cancel": StreamCancelParams,
}


def parse_method_params(method: str, params: Dict[str, Any]) -> BaseModel:
    """Validate params for a method and return typed model."""
    model = METHOD_PARAM_MODELS.get(method)
    if model is None:
        raise ValueError(f"Unsupported RPC method: {method}")
    return model.model_validate(params)
