"""
ChunkBuffer: per-session PCM accumulator that packages audio for transcription.

- append(): add decoded PCM; returns a request immediately when the size threshold is hit.
- flush(): everything since the last flush → exactly one TranscriptionRequest (WAV), then clear.
  Called by the session's interval timer, by append() on size overflow, and once more,
  unconditionally, when the session stops (final flush).
- flush() on an empty buffer returns None: never a zero-length request.
"""
from __future__ import annotations

import logging

from callscribe.audio.codec import wrap_wav
from callscribe.audio.frames import PcmChunk
from callscribe.transcription.base import TranscriptionRequest

logger = logging.getLogger(__name__)


class ChunkBuffer:
    """Accumulates PCM for one call; sequence numbers increase by one per flushed request."""

    def __init__(
        self,
        call_id: str,
        sample_rate: int = 16000,
        max_bytes: int | None = None,
        sample_width: int = 2,
    ) -> None:
        self._call_id = call_id
        self._sample_rate = sample_rate
        self._sample_width = sample_width
        self._max_bytes = max_bytes
        self._buffer = bytearray()
        self._next_sequence = 0
        self._total_bytes = 0

    def append(self, chunk: PcmChunk) -> TranscriptionRequest | None:
        """Add PCM. Returns a flushed request when the size threshold is reached, else None."""
        if chunk.sample_rate != self._sample_rate:
            raise ValueError(
                f"chunk rate {chunk.sample_rate} does not match buffer rate {self._sample_rate}"
            )
        self._buffer.extend(chunk.samples)
        self._total_bytes += len(chunk.samples)
        if self._max_bytes and len(self._buffer) >= self._max_bytes:
            logger.debug("Chunk buffer for %s reached %d bytes, flushing", self._call_id, len(self._buffer))
            return self.flush()
        return None

    def flush(self) -> TranscriptionRequest | None:
        if not self._buffer:
            return None
        pcm = bytes(self._buffer)
        self._buffer.clear()
        request = TranscriptionRequest(
            call_id=self._call_id,
            sequence=self._next_sequence,
            audio=wrap_wav(pcm, self._sample_rate, sample_width=self._sample_width),
            duration_seconds=len(pcm) / (self._sample_rate * self._sample_width),
        )
        self._next_sequence += 1
        return request

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    @property
    def requests_created(self) -> int:
        return self._next_sequence
