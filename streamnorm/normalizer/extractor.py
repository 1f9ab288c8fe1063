"""Schema-polymorphic text extraction from decoded upstream payloads.

Each probe recognizes one upstream envelope shape and returns an
``ExtractedFragment`` when the payload structurally matches, or ``None`` to
let the next probe try. Probes run in a fixed order and the first structural
match wins, even when the text it yields is empty. New upstream protocols are
supported by appending a probe; existing probes are never edited for them.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from streamnorm.normalizer.types import ExtractedFragment

logger = logging.getLogger(__name__)

Probe = Callable[[Any], Optional[ExtractedFragment]]

DEFAULT_REASONING_PREFIXES: Tuple[str, ...] = ("response.reasoning",)

_TEXT_FIELDS = ("value", "text", "content")

MAX_UNWRAP_DEPTH = 32


def _get(obj: Any, *path: Any) -> Any:
    """Walk dict keys / list indexes, returning ``None`` on any miss."""
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
    return current


def _type_tag(payload: Any) -> Optional[str]:
    tag = _get(payload, "type")
    return tag if isinstance(tag, str) else None


def _is_reasoning_part(part: Any) -> bool:
    tag = _type_tag(part)
    return tag is not None and tag.startswith("reasoning")


def unwrap_text(content: Any, _depth: int = 0) -> str:
    """Recursively unwrap delta content into plain text.

    Unknown leaves contribute nothing; opaque structures are never stringified.
    Nesting deeper than ``MAX_UNWRAP_DEPTH`` contributes nothing either.
    """
    if content is None or _depth > MAX_UNWRAP_DEPTH:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(unwrap_text(item, _depth + 1) for item in content)
    if isinstance(content, dict):
        for name in _TEXT_FIELDS:
            value = content.get(name)
            if isinstance(value, str):
                return value
        nested = _get(content, "data", "text")
        if isinstance(nested, str):
            return nested
        for name in _TEXT_FIELDS:
            value = content.get(name)
            if isinstance(value, (list, dict)):
                return unwrap_text(value, _depth + 1)
    return ""


def probe_flat_response(payload: Any) -> Optional[ExtractedFragment]:
    """Untagged ``{"response": "..."}`` chunks (Workers AI style)."""
    if _type_tag(payload) is not None:
        return None
    text = _get(payload, "response")
    if isinstance(text, str):
        return ExtractedFragment.delta(text)
    return None


def make_reasoning_probe(prefixes: Sequence[str] = DEFAULT_REASONING_PREFIXES) -> Probe:
    """Build a probe that tags deliberation-trace events by their type prefix."""
    normalized = tuple(prefix for prefix in prefixes if prefix)

    def probe_reasoning_tag(payload: Any) -> Optional[ExtractedFragment]:
        tag = _type_tag(payload)
        if tag is None or not any(tag.startswith(prefix) for prefix in normalized):
            return None
        text = ""
        for name in ("delta", "text"):
            value = _get(payload, name)
            if isinstance(value, str):
                text = value
                break
        return ExtractedFragment.reasoning(text)

    return probe_reasoning_tag


probe_reasoning_tag = make_reasoning_probe()


def probe_output_text_delta(payload: Any) -> Optional[ExtractedFragment]:
    """Responses API ``response.output_text.delta`` events."""
    if _type_tag(payload) != "response.output_text.delta":
        return None
    delta = _get(payload, "delta")
    if isinstance(delta, str):
        return ExtractedFragment.delta(delta)
    return None


def probe_response_completed(payload: Any) -> Optional[ExtractedFragment]:
    """Responses API ``response.completed`` events carrying the full output."""
    if _type_tag(payload) != "response.completed":
        return None
    output = _get(payload, "response", "output")
    if not isinstance(output, list):
        return None

    texts: List[str] = []
    for item in output:
        if _is_reasoning_part(item):
            continue
        item_text = _get(item, "text")
        if isinstance(item_text, str):
            texts.append(item_text)
        content = _get(item, "content")
        if not isinstance(content, list):
            continue
        for part in content:
            if _is_reasoning_part(part):
                continue
            part_text = _get(part, "text")
            if isinstance(part_text, str):
                texts.append(part_text)
                continue
            nested = _get(part, "data", "text")
            if isinstance(nested, str):
                texts.append(nested)
    return ExtractedFragment.snapshot("".join(texts))


def probe_chat_delta(payload: Any) -> Optional[ExtractedFragment]:
    """Chat Completions chunks with ``choices[0].delta.content``."""
    delta = _get(payload, "choices", 0, "delta")
    if not isinstance(delta, dict) or "content" not in delta:
        return None
    return ExtractedFragment.delta(unwrap_text(delta["content"]))


def probe_legacy_fields(payload: Any) -> Optional[ExtractedFragment]:
    """Field paths from older completions and item/part-style protocols."""
    for path in (
        ("choices", 0, "text"),
        ("choices", 0, "message", "content"),
        ("part", "text"),
        ("item", "content", 0, "text"),
    ):
        value = _get(payload, *path)
        if isinstance(value, str):
            return ExtractedFragment.delta(value)
    return None


def probe_anthropic_block_delta(payload: Any) -> Optional[ExtractedFragment]:
    """Anthropic Messages ``content_block_delta`` events."""
    if _type_tag(payload) != "content_block_delta":
        return None
    delta_type = _get(payload, "delta", "type")
    if delta_type == "text_delta":
        text = _get(payload, "delta", "text")
        return ExtractedFragment.delta(text if isinstance(text, str) else "")
    if delta_type == "thinking_delta":
        text = _get(payload, "delta", "thinking")
        return ExtractedFragment.reasoning(text if isinstance(text, str) else "")
    return None


def probe_chat_reasoning_delta(payload: Any) -> Optional[ExtractedFragment]:
    """Chat chunks that carry only ``reasoning_content`` / ``reasoning``."""
    delta = _get(payload, "choices", 0, "delta")
    if not isinstance(delta, dict):
        return None
    for name in ("reasoning_content", "reasoning"):
        value = delta.get(name)
        if isinstance(value, str):
            return ExtractedFragment.reasoning(value)
    return None


def probe_gemini_candidates(payload: Any) -> Optional[ExtractedFragment]:
    """Gemini ``candidates[0].content.parts[*].text`` chunks."""
    parts = _get(payload, "candidates", 0, "content", "parts")
    if not isinstance(parts, list):
        return None
    texts = []
    for part in parts:
        # Parts flagged as thoughts are deliberation, not answer text.
        if _get(part, "thought") is True:
            continue
        text = _get(part, "text")
        if isinstance(text, str):
            texts.append(text)
    return ExtractedFragment.delta("".join(texts))


def default_probes(reasoning_prefixes: Sequence[str] = DEFAULT_REASONING_PREFIXES) -> Tuple[Probe, ...]:
    return (
        probe_flat_response,
        make_reasoning_probe(reasoning_prefixes),
        probe_output_text_delta,
        probe_response_completed,
        probe_chat_delta,
        probe_legacy_fields,
        probe_anthropic_block_delta,
        probe_chat_reasoning_delta,
        probe_gemini_candidates,
    )


class TextExtractor:
    """Ordered probe chain over decoded payloads."""

    def __init__(self, probes: Optional[Iterable[Probe]] = None) -> None:
        self.probes: Tuple[Probe, ...] = tuple(probes) if probes is not None else default_probes()

    @classmethod
    def from_config(cls, normalizer_cfg) -> "TextExtractor":
        prefixes = getattr(normalizer_cfg, "reasoning_prefixes", DEFAULT_REASONING_PREFIXES)
        return cls(default_probes(tuple(prefixes)))

    def with_probe(self, probe: Probe) -> "TextExtractor":
        """Return a new extractor with ``probe`` tried after every existing one."""
        return TextExtractor(self.probes + (probe,))

    def extract(self, payload: Any) -> Optional[ExtractedFragment]:
        """Return the fragment for ``payload``, or ``None`` if it carries no text."""
        for probe in self.probes:
            fragment = probe(payload)
            if fragment is None:
                continue
            if not fragment.text:
                return None
            return fragment

        logger.debug("No extractor probe matched payload of type %s", type(payload).__name__)
        return None


_DEFAULT_EXTRACTOR = TextExtractor()


def extract(payload: Any) -> Optional[ExtractedFragment]:
    """Extract with the default probe chain."""
    return _DEFAULT_EXTRACTOR.extract(payload)
