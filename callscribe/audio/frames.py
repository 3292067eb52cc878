"""
Audio value types flowing through the ingestion path.

AudioFrame: one telephony media message (compressed payload), consumed immediately by the codec.
PcmChunk: decoded, upsampled PCM 16-bit mono little-endian; owned by the chunk buffer until flushed.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class AudioFrame:
    """Raw mu-law payload from one `media` event."""

    payload: bytes
    sequence_number: int | None = None
    track: str | None = None  # "inbound" | "outbound" | None (single-track streams)
    arrived_at: float = field(default_factory=time.monotonic)


@dataclass
class PcmChunk:
    """Linear PCM samples (int16 LE bytes) at sample_rate."""

    samples: bytes
    sample_rate: int
    sample_width: int = 2

    @property
    def num_samples(self) -> int:
        return len(self.samples) // self.sample_width

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.num_samples / self.sample_rate
