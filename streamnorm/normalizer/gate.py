"""Per-fragment gating and full-text dedup for the canonical stream."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Pattern

from streamnorm.normalizer.types import (
    Emit,
    ExtractedFragment,
    FragmentKind,
    GateDecision,
    NormalizerState,
    Replace,
    Suppress,
)

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_SLACK = 8
DEFAULT_FINAL_MARKER = "<final>"
DEFAULT_ROLE_LABELS = ("assistant", "user", "system", "analysis", "commentary", "thought")

_PLACEHOLDER = re.compile(r"^\s*(?:\.{3,}|…+)\s*$")


def _role_prefix_pattern(labels: Iterable[str]) -> Optional[Pattern[str]]:
    cleaned = [re.escape(str(label).strip()) for label in labels if str(label).strip()]
    if not cleaned:
        return None
    return re.compile(r"^\s*(?:%s)\s*[:：]" % "|".join(cleaned), re.IGNORECASE)


class ContentGate:
    """Decide whether each fragment is emitted, suppressed or replaces the text.

    The gate holds configuration only; all per-stream mutation goes through the
    ``NormalizerState`` passed to ``accept``.
    """

    def __init__(
        self,
        *,
        snapshot_slack: int = DEFAULT_SNAPSHOT_SLACK,
        final_marker: str = DEFAULT_FINAL_MARKER,
        role_labels: Iterable[str] = DEFAULT_ROLE_LABELS,
    ) -> None:
        self.snapshot_slack = max(0, int(snapshot_slack))
        self.final_marker = final_marker or ""
        self._role_prefix = _role_prefix_pattern(role_labels)

    @classmethod
    def from_config(cls, normalizer_cfg) -> "ContentGate":
        return cls(
            snapshot_slack=getattr(normalizer_cfg, "snapshot_slack", DEFAULT_SNAPSHOT_SLACK),
            final_marker=getattr(normalizer_cfg, "final_marker", DEFAULT_FINAL_MARKER),
            role_labels=getattr(normalizer_cfg, "role_labels", DEFAULT_ROLE_LABELS),
        )

    def is_pre_final_noise(self, text: str) -> bool:
        if _PLACEHOLDER.match(text):
            return True
        return bool(self._role_prefix and self._role_prefix.match(text))

    def accept(self, fragment: ExtractedFragment, state: NormalizerState) -> GateDecision:
        if fragment.kind == FragmentKind.REASONING:
            return Suppress(reason="reasoning")

        if fragment.kind == FragmentKind.TERMINAL_SNAPSHOT:
            return self._accept_snapshot(fragment.text, state)

        if (
            not state.final_opened
            and self.is_pre_final_noise(fragment.text)
            and not state.window.contains_across(self.final_marker, fragment.text)
        ):
            # Suppressed text still feeds the window so a split marker is found.
            state.window.push(fragment.text)
            logger.debug("Suppressed pre-final noise fragment %r", fragment.text[:40])
            return Suppress(reason="pre-final-noise")

        self._append(fragment.text, state)
        state.seen_delta = True
        return Emit(text=fragment.text)

    def _accept_snapshot(self, text: str, state: NormalizerState) -> GateDecision:
        previous = state.visible_text
        if state.seen_delta and len(text) <= len(previous) + self.snapshot_slack:
            return Suppress(reason="redundant-snapshot")

        if not previous:
            self._append(text, state)
            return Emit(text=text)

        appended = self._snapshot_tail(text, previous)
        if not appended:
            return Suppress(reason="redundant-snapshot")

        state.visible_text = previous + appended
        state.emitted_count += 1
        self._observe(appended, state)
        return Replace(text=state.visible_text, appended=appended)

    @staticmethod
    def _snapshot_tail(snapshot: str, visible: str) -> Optional[str]:
        """Return the part of ``snapshot`` that follows the visible text.

        Text the gate suppressed earlier may still lead the snapshot, so the
        visible text is located rather than assumed to be a prefix. ``None``
        means the snapshot does not contain what the client already has.
        """
        if snapshot.startswith(visible):
            return snapshot[len(visible) :]
        index = snapshot.find(visible)
        if index < 0:
            logger.debug("Snapshot does not extend visible text (%d chars); ignoring", len(visible))
            return None
        return snapshot[index + len(visible) :]

    def _append(self, text: str, state: NormalizerState) -> None:
        state.visible_text += text
        state.emitted_count += 1
        self._observe(text, state)

    def _observe(self, text: str, state: NormalizerState) -> None:
        if not state.final_opened and state.window.contains_across(self.final_marker, text):
            state.final_opened = True
            logger.debug("Final-answer marker observed after %d fragments", state.emitted_count)
        state.window.push(text)
