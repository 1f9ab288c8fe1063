"""Canonical and verbatim output encoders."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from streamnorm.normalizer.types import Emit, GateDecision, Replace

EVENT_BOUNDARY = b"\n\n"
DATA_PREFIX = b"data: "
GENERIC_FAILURE_MESSAGE = "Failed to process request"


class CanonicalEnvelope(BaseModel):
    """The only payload shape written to the canonical stream."""

    model_config = ConfigDict(extra="forbid")

    response: str


class ErrorPayload(BaseModel):
    """Single structured payload reported on terminal failure."""

    model_config = ConfigDict(extra="forbid")

    error: str = GENERIC_FAILURE_MESSAGE


class CanonicalEncoder:
    """Serialize accepted text as one ``data:`` line plus a blank line."""

    def encode(self, text: str) -> bytes:
        envelope = CanonicalEnvelope(response=text)
        return DATA_PREFIX + envelope.model_dump_json().encode("utf-8") + EVENT_BOUNDARY

    def encode_decision(self, decision: GateDecision) -> bytes:
        if isinstance(decision, Emit) and decision.text:
            return self.encode(decision.text)
        if isinstance(decision, Replace) and decision.appended:
            return self.encode(decision.appended)
        return b""


class PassthroughEncoder:
    """Verbatim mode: upstream bytes are forwarded unchanged."""

    def encode(self, chunk: bytes) -> bytes:
        return bytes(chunk)


def error_body() -> bytes:
    return ErrorPayload().model_dump_json().encode("utf-8")
