"""Single-pass upstream-to-canonical stream pipeline."""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional, Union

from streamnorm.normalizer.encoder import CanonicalEncoder, PassthroughEncoder
from streamnorm.normalizer.errors import UpstreamStreamError
from streamnorm.normalizer.extractor import TextExtractor
from streamnorm.normalizer.gate import ContentGate
from streamnorm.normalizer.reassembler import FrameReassembler
from streamnorm.normalizer.types import (
    ExtractedFragment,
    GateDecision,
    LogicalEvent,
    NormalizerState,
    Suppress,
    TrailingWindow,
)

logger = logging.getLogger(__name__)

DEFAULT_DONE_SENTINEL = "[DONE]"


class StreamMode(str, Enum):
    """Operating mode requested by the consumer."""

    NORMALIZE = "normalize"
    PASSTHROUGH = "passthrough"

    @classmethod
    def from_value(cls, value: Union[str, "StreamMode", None]) -> "StreamMode":
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NORMALIZE

        normalized = str(value).strip().lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"Unsupported stream mode: {value}")


class StreamNormalizer:
    """Owns the reassembler, gate state and encoder for one stream."""

    def __init__(
        self,
        normalizer_cfg: Any = None,
        *,
        extractor: Optional[TextExtractor] = None,
        gate: Optional[ContentGate] = None,
        encoder: Optional[CanonicalEncoder] = None,
    ) -> None:
        self.strict_json = bool(getattr(normalizer_cfg, "strict_json", True))
        self.done_sentinel = str(getattr(normalizer_cfg, "done_sentinel", DEFAULT_DONE_SENTINEL))
        window_size = int(getattr(normalizer_cfg, "marker_window", 64))

        self.extractor = extractor or (
            TextExtractor.from_config(normalizer_cfg) if normalizer_cfg is not None else TextExtractor()
        )
        self.gate = gate or (ContentGate.from_config(normalizer_cfg) if normalizer_cfg is not None else ContentGate())
        self.encoder = encoder or CanonicalEncoder()
        self.reassembler = FrameReassembler()
        self.state = NormalizerState(window=TrailingWindow(window_size))

    @property
    def finished(self) -> bool:
        return self.state.finished

    @property
    def visible_text(self) -> str:
        return self.state.visible_text

    def feed(self, chunk: bytes) -> List[bytes]:
        output: List[bytes] = []
        for event in self.reassembler.feed(chunk):
            output.extend(self.process_event(event))
        return output

    def finish(self) -> List[bytes]:
        event = self.reassembler.flush()
        if event is None:
            return []
        return self.process_event(event)

    def decode_payload(self, event: LogicalEvent) -> Optional[ExtractedFragment]:
        """Turn one logical event into a fragment, or ``None`` to drop it."""
        if not event.has_data:
            return None

        raw = event.data
        if not raw:
            return None
        if raw.strip() == self.done_sentinel:
            self.state.finished = True
            return None

        try:
            payload = json.loads(raw)
        except RecursionError:
            logger.debug("Discarding upstream payload nested too deeply to decode (%d chars)", len(raw))
            return None
        except ValueError:
            if self.strict_json:
                logger.debug("Discarding non-JSON upstream payload (%d chars)", len(raw))
                return None
            return ExtractedFragment.delta(raw)

        try:
            return self.extractor.extract(payload)
        except RecursionError:
            logger.debug("Discarding upstream payload nested too deeply to extract (%d chars)", len(raw))
            return None

    def process_event(self, event: LogicalEvent) -> List[bytes]:
        if self.state.finished:
            return []
        fragment = self.decode_payload(event)
        if fragment is None:
            return []

        decision = self.accept(fragment)
        encoded = self.encoder.encode_decision(decision)
        return [encoded] if encoded else []

    def accept(self, fragment: ExtractedFragment) -> GateDecision:
        decision = self.gate.accept(fragment, self.state)
        if isinstance(decision, Suppress):
            logger.debug("Suppressed %s fragment: %s", fragment.kind.value, decision.reason)
        return decision


def _close_quietly(upstream: Any) -> None:
    close = getattr(upstream, "close", None)
    if callable(close):
        try:
            close()
        except Exception:
            logger.debug("Upstream close failed", exc_info=True)


def normalize_stream(
    chunks: Iterable[bytes],
    *,
    mode: Union[str, StreamMode] = StreamMode.NORMALIZE,
    normalizer_cfg: Any = None,
) -> Iterator[bytes]:
    """Yield output bytes for an upstream byte iterable.

    Closing this generator closes the upstream iterator, so a departed
    consumer stops upstream consumption.
    """
    mode = StreamMode.from_value(mode)
    upstream = iter(chunks)
    passthrough = PassthroughEncoder()
    normalizer = StreamNormalizer(normalizer_cfg) if mode == StreamMode.NORMALIZE else None

    try:
        while True:
            try:
                chunk = next(upstream)
            except StopIteration:
                break
            except Exception as exc:
                logger.warning("Upstream stream failed: %s", exc)
                raise UpstreamStreamError(str(exc)) from exc

            if normalizer is None:
                if chunk:
                    yield passthrough.encode(chunk)
                continue

            for encoded in normalizer.feed(chunk):
                yield encoded
            if normalizer.finished:
                break

        if normalizer is not None:
            for encoded in normalizer.finish():
                yield encoded
    finally:
        _close_quietly(upstream)


async def anormalize_stream(
    chunks: AsyncIterable[bytes],
    *,
    mode: Union[str, StreamMode] = StreamMode.NORMALIZE,
    normalizer_cfg: Any = None,
) -> AsyncIterator[bytes]:
    """Async counterpart of ``normalize_stream``; suspends only on upstream reads."""
    mode = StreamMode.from_value(mode)
    upstream = chunks.__aiter__()
    passthrough = PassthroughEncoder()
    normalizer = StreamNormalizer(normalizer_cfg) if mode == StreamMode.NORMALIZE else None

    try:
        while True:
            try:
                chunk = await upstream.__anext__()
            except StopAsyncIteration:
                break
            except Exception as exc:
                logger.warning("Upstream stream failed: %s", exc)
                raise UpstreamStreamError(str(exc)) from exc

            if normalizer is None:
                if chunk:
                    yield passthrough.encode(chunk)
                continue

            for encoded in normalizer.feed(chunk):
                yield encoded
            if normalizer.finished:
                break

        if normalizer is not None:
            for encoded in normalizer.finish():
                yield encoded
    finally:
        aclose = getattr(upstream, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except Exception:
                logger.debug("Upstream aclose failed", exc_info=True)
