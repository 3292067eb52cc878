"""
SentenceAggregator: turns raw transcript chunks into deliverable segments, one instance per call.

State: EMPTY → ACCUMULATING on first append; ACCUMULATING → EMPTY on every full delivery
(a complete-sentence delivery that leaves a remainder stays ACCUMULATING).

Delivery rules, checked after every append and on every tick; at most one fires per check:
1. complete-sentence: buffer contains terminal punctuation → deliver up to and including the
   last mark, keep the rest.
2. aged: buffer older than max_age_seconds → deliver all, adding a period if unterminated.
3. content-threshold: buffer has >= min_words → deliver all as-is.
flush() at session end delivers whatever is left (reason "session-end").
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from callscribe.transcription.base import TranscriptChunk

# Terminal mark (optionally followed by closing quotes/brackets) at a word boundary.
# "3.5" and "e.g.x" do not count; "done." and "really?!" do.
_TERMINAL_RE = re.compile(r"[.!?]+[\"')\]]*(?=\s|$)")


class DeliveryReason(str, Enum):
    COMPLETE_SENTENCE = "complete-sentence"
    AGED = "aged"
    CONTENT_THRESHOLD = "content-threshold"
    SESSION_END = "session-end"


class AggregatorState(str, Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"


@dataclass
class TranscriptSegment:
    """Finalized, punctuation-normalized text ready for observers."""

    call_id: str
    text: str
    reason: DeliveryReason
    buffer_age_seconds: float
    confidence: float
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def word_count(self) -> int:
        return len(self.text.split())


def normalize_text(text: str) -> str:
    """Collapse whitespace, drop space before punctuation, squash repeated punctuation."""
    if not text:
        return ""
    text = re.sub(r"\s+", " ", text.strip())
    text = re.sub(r"\s+([.,!?;:])", r"\1", text)
    text = re.sub(r"([.!?,;:])\1+", r"\1", text)
    return text.strip()


def _last_boundary(text: str) -> int:
    """Index just past the last terminal mark, or 0 when there is none."""
    end = 0
    for match in _TERMINAL_RE.finditer(text):
        end = match.end()
    return end


def _terminate(text: str) -> str:
    """Add a period unless the text already ends on a terminal mark."""
    if _last_boundary(text) == len(text):
        return text
    return text.rstrip(",;:") + "."


class SentenceAggregator:
    """
    Pending-text buffer for one call. Only the owning session's pipeline calls into it,
    always from the event loop, so no locking.
    """

    def __init__(
        self,
        call_id: str,
        max_age_seconds: float = 4.0,
        min_words: int = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._call_id = call_id
        self._max_age = max_age_seconds
        self._min_words = max(1, min_words)
        self._clock = clock
        self._buffer = ""
        self._started_at: float | None = None
        self._last_append_at: float | None = None
        self._confidences: list[float] = []

    @property
    def state(self) -> AggregatorState:
        return AggregatorState.ACCUMULATING if self._buffer else AggregatorState.EMPTY

    @property
    def pending_text(self) -> str:
        return self._buffer

    def buffer_age(self, now: float | None = None) -> float:
        if self._started_at is None:
            return 0.0
        return (self._clock() if now is None else now) - self._started_at

    def on_chunk(self, chunk: TranscriptChunk) -> TranscriptSegment | None:
        """Append chunk text, then run one delivery check."""
        text = normalize_text(chunk.text)
        if not text:
            return None
        now = self._clock()
        if not self._buffer:
            self._started_at = now
            self._buffer = text
        else:
            self._buffer = normalize_text(f"{self._buffer} {text}")
        self._last_append_at = now
        self._confidences.append(chunk.confidence)
        return self.evaluate(now)

    def evaluate(self, now: float | None = None) -> TranscriptSegment | None:
        """One delivery check. Called after each append and from the session's tick timer."""
        if not self._buffer:
            return None
        now = self._clock() if now is None else now

        boundary = _last_boundary(self._buffer)
        if boundary:
            head = self._buffer[:boundary].strip()
            tail = self._buffer[boundary:].strip()
            return self._deliver(head, tail, DeliveryReason.COMPLETE_SENTENCE, now)

        if self.buffer_age(now) > self._max_age:
            return self._deliver(_terminate(self._buffer), "", DeliveryReason.AGED, now)

        if len(self._buffer.split()) >= self._min_words:
            return self._deliver(self._buffer, "", DeliveryReason.CONTENT_THRESHOLD, now)

        return None

    def flush(self) -> TranscriptSegment | None:
        """Deliver any remaining text; used once when the session stops."""
        if not self._buffer:
            return None
        return self._deliver(_terminate(self._buffer), "", DeliveryReason.SESSION_END, self._clock())

    def _deliver(self, text: str, remainder: str, reason: DeliveryReason, now: float) -> TranscriptSegment:
        segment = TranscriptSegment(
            call_id=self._call_id,
            text=text,
            reason=reason,
            buffer_age_seconds=max(0.0, self.buffer_age(now)),
            confidence=sum(self._confidences) / len(self._confidences) if self._confidences else 0.0,
        )
        self._buffer = remainder
        if remainder:
            # Remainder words came in with the latest chunk
            self._started_at = self._last_append_at
            self._confidences = self._confidences[-1:]
        else:
            self._started_at = None
            self._confidences = []
        return segment
