"""Core stream normalization types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Tuple, Union

METADATA_FIELDS = ("event", "id", "retry")


class FragmentKind(str, Enum):
    """Classification of one extracted upstream fragment."""

    INCREMENTAL_DELTA = "incremental-delta"
    TERMINAL_SNAPSHOT = "terminal-snapshot"
    REASONING = "reasoning"


@dataclass(frozen=True)
class LogicalEvent:
    """One upstream event, as the lines found between two blank lines."""

    lines: Tuple[str, ...] = ()

    def _field_values(self, name: str) -> list[str]:
        prefix = f"{name}:"
        values = []
        for line in self.lines:
            if line.startswith(prefix):
                value = line[len(prefix) :]
                # Only the single space after the colon belongs to the framing.
                values.append(value[1:] if value.startswith(" ") else value)
        return values

    @property
    def data(self) -> str:
        """Payload lines joined in order; one JSON value may span several lines."""
        return "".join(self._field_values("data"))

    @property
    def has_data(self) -> bool:
        return any(line.startswith("data:") for line in self.lines)

    @property
    def event_name(self) -> Optional[str]:
        names = self._field_values("event")
        return names[-1] if names else None

    @property
    def is_empty(self) -> bool:
        return not any(line.strip() for line in self.lines)


@dataclass(frozen=True)
class ExtractedFragment:
    """Text pulled out of one decoded payload, with its classification."""

    text: str
    kind: FragmentKind = FragmentKind.INCREMENTAL_DELTA

    @classmethod
    def delta(cls, text: str) -> "ExtractedFragment":
        return cls(text=text, kind=FragmentKind.INCREMENTAL_DELTA)

    @classmethod
    def snapshot(cls, text: str) -> "ExtractedFragment":
        return cls(text=text, kind=FragmentKind.TERMINAL_SNAPSHOT)

    @classmethod
    def reasoning(cls, text: str) -> "ExtractedFragment":
        return cls(text=text, kind=FragmentKind.REASONING)


@dataclass(frozen=True)
class Emit:
    type: Literal["emit"] = "emit"
    text: str = ""


@dataclass(frozen=True)
class Suppress:
    type: Literal["suppress"] = "suppress"
    reason: str = ""


@dataclass(frozen=True)
class Replace:
    """Wholesale replacement of the visible text.

    ``text`` is the new visible text and ``appended`` the part of it that
    follows what was visible before, which is what an append-only canonical
    stream can carry.
    """

    type: Literal["replace"] = "replace"
    text: str = ""
    appended: str = ""


GateDecision = Union[Emit, Suppress, Replace]


class TrailingWindow:
    """Fixed-size tail of recently emitted text."""

    def __init__(self, size: int = 64) -> None:
        self.size = max(1, int(size))
        self._tail = ""

    @property
    def text(self) -> str:
        return self._tail

    def contains_across(self, needle: str, incoming: str) -> bool:
        """Return whether ``needle`` occurs in the tail followed by ``incoming``."""
        if not needle:
            return False
        keep = max(len(needle) - 1, 0)
        haystack = (self._tail[-keep:] if keep else "") + incoming
        return needle.lower() in haystack.lower()

    def push(self, text: str) -> None:
        if text:
            self._tail = (self._tail + text)[-self.size :]


@dataclass
class NormalizerState:
    """Per-stream mutable state owned by one pipeline instance."""

    visible_text: str = ""
    seen_delta: bool = False
    final_opened: bool = False
    window: TrailingWindow = field(default_factory=TrailingWindow)
    finished: bool = False
    emitted_count: int = 0
