"""Live terminal preview of a canonical stream."""

from __future__ import annotations

import logging
import re
import time
from typing import Optional

from pydantic import ValidationError
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown

from streamnorm.normalizer.encoder import CanonicalEnvelope
from streamnorm.normalizer.reassembler import FrameReassembler
from streamnorm.normalizer.types import LogicalEvent

logger = logging.getLogger(__name__)

_FINAL_REGION = re.compile(r"<final>([\s\S]*?)</final>", re.IGNORECASE)


def visible_text_from(raw: str) -> str:
    """Return the text inside the first ``<final>…</final>`` region, else everything."""
    if not raw:
        return ""
    match = _FINAL_REGION.search(raw)
    return match.group(1) if match else raw


def _balance_fences(text: str) -> str:
    """Keep preview render stable even when the model leaves fences unclosed."""
    if text.count("```") % 2 == 1:
        return f"{text}\n```"
    return text


class CanonicalPreview:
    """Accumulate canonical events and render the visible answer as Markdown."""

    def __init__(
        self,
        console: Optional[Console] = None,
        *,
        render_interval: float = 0.25,
        live: bool = True,
    ) -> None:
        self.console = console or Console(stderr=True)
        self.render_interval = render_interval
        self.text = ""
        self._reassembler = FrameReassembler()
        self._live: Optional[Live] = None
        self._use_live = live and self.console.is_terminal
        self._last_render_at = 0.0

    def __enter__(self) -> "CanonicalPreview":
        if self._use_live:
            self._live = Live(console=self.console, refresh_per_second=8, transient=False)
            self._live.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        event = self._reassembler.flush()
        if event is not None:
            self._absorb(event)
        if self._live is not None:
            self._live.update(self.renderable())
            self._live.__exit__(exc_type, exc, tb)
            self._live = None
        else:
            self.console.print(self.renderable())
        return False

    @property
    def visible_text(self) -> str:
        return visible_text_from(self.text)

    def renderable(self) -> Markdown:
        return Markdown(_balance_fences(self.visible_text))

    def _absorb(self, event: LogicalEvent) -> None:
        if not event.data:
            return
        try:
            envelope = CanonicalEnvelope.model_validate_json(event.data)
        except ValidationError:
            logger.debug("Preview skipped non-canonical event")
            return
        self.text += envelope.response

    def feed(self, output: bytes) -> None:
        for event in self._reassembler.feed(output):
            self._absorb(event)

        if self._live is None:
            return
        now = time.monotonic()
        if now - self._last_render_at >= self.render_interval:
            self._live.update(self.renderable())
            self._last_render_at = now
