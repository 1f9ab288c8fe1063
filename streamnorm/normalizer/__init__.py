"""Streaming response normalization core."""

from streamnorm.normalizer.encoder import CanonicalEncoder, CanonicalEnvelope, ErrorPayload, error_body
from streamnorm.normalizer.errors import NormalizerError, UpstreamStreamError
from streamnorm.normalizer.extractor import TextExtractor, extract
from streamnorm.normalizer.gate import ContentGate
from streamnorm.normalizer.pipeline import StreamMode, StreamNormalizer, anormalize_stream, normalize_stream
from streamnorm.normalizer.reassembler import FrameReassembler
from streamnorm.normalizer.types import ExtractedFragment, FragmentKind, LogicalEvent, NormalizerState

__all__ = [
    "CanonicalEncoder",
    "CanonicalEnvelope",
    "ContentGate",
    "ErrorPayload",
    "ExtractedFragment",
    "FragmentKind",
    "FrameReassembler",
    "LogicalEvent",
    "NormalizerError",
    "NormalizerState",
    "StreamMode",
    "StreamNormalizer",
    "TextExtractor",
    "UpstreamStreamError",
    "anormalize_stream",
    "error_body",
    "extract",
    "normalize_stream",
]
