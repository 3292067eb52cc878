"""Drop transcript chunks that are line noise rather than speech."""
from __future__ import annotations

import re

from callscribe.transcription.base import TranscriptChunk

_PUNCTUATION_ONLY = re.compile(r"^[\s.,!?;:'\"-]*$")
_FILLER = re.compile(r"^(um+|uh+|ah+|oh+|mm+|hmm+)[.!?]?$", re.IGNORECASE)
_LINE_ARTIFACT = re.compile(r"^(static|noise|beep|ring|dial|tone)[.!?]?$", re.IGNORECASE)


def rejection_reason(chunk: TranscriptChunk, min_confidence: float = 0.2) -> str | None:
    """Why the chunk should be dropped, or None if it is usable."""
    text = (chunk.text or "").strip()
    if not text:
        return "empty"
    if _PUNCTUATION_ONLY.match(text):
        return "punctuation-only"
    if chunk.confidence < min_confidence:
        return "low-confidence"
    if _FILLER.match(text):
        return "filler"
    if _LINE_ARTIFACT.match(text):
        return "line-artifact"
    return None


def is_usable_chunk(chunk: TranscriptChunk, min_confidence: float = 0.2) -> bool:
    return rejection_reason(chunk, min_confidence) is None
