"""
Telephony audio codec: G.711 mu-law → PCM 16-bit, 8 kHz → 16 kHz.

Stages (all pure functions over numpy arrays, safe to call from any session):
1. decode(): 256-entry table lookup (ITU-T G.711 mu-law expansion).
2. apply_noise_gate(): |sample| < threshold → 0; others scaled by gain and clamped to int16.
3. upsample(): linear interpolation, N samples → N * factor samples. FrameConverter carries
   the last sample of each frame into the next so a stream has no step at frame boundaries.
4. wrap_wav(): RIFF/WAVE container (format tag, channels, rate, bit depth, data length)
   so a flushed chunk can be uploaded to the provider as-is.
"""
from __future__ import annotations

import io
import wave

import numpy as np

from callscribe.audio.frames import PcmChunk

_BIAS = 0x84
_CLIP = 32635

INT16_MIN = -32768
INT16_MAX = 32767


def _build_decode_table() -> np.ndarray:
    """mu-law byte → int16. Codes are stored bit-inverted on the wire."""
    codes = ~np.arange(256, dtype=np.int32) & 0xFF
    sign = codes & 0x80
    exponent = (codes >> 4) & 0x07
    mantissa = codes & 0x0F
    magnitude = (((mantissa << 3) + _BIAS) << exponent) - _BIAS
    table = np.where(sign != 0, -magnitude, magnitude).astype(np.int16)
    table.setflags(write=False)
    return table


MULAW_DECODE_TABLE = _build_decode_table()


def decode(payload: bytes) -> np.ndarray:
    """mu-law bytes → int16 samples (one sample per byte)."""
    if not payload:
        return np.zeros(0, dtype=np.int16)
    codes = np.frombuffer(payload, dtype=np.uint8)
    return MULAW_DECODE_TABLE[codes]


def encode(samples: np.ndarray) -> bytes:
    """int16 samples → mu-law bytes. Inverse of decode() up to one quantization step."""
    values = np.asarray(samples, dtype=np.int32)
    sign = np.where(values < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(values), _CLIP) + _BIAS
    exponent = np.zeros(values.shape, dtype=np.int32)
    for exp in range(1, 8):
        exponent[magnitude >= (0x80 << exp)] = exp
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    codes = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return codes.astype(np.uint8).tobytes()


def apply_noise_gate(samples: np.ndarray, threshold: int, gain: float) -> np.ndarray:
    """Zero samples under the noise floor; scale the rest by gain, clamped to int16."""
    values = np.asarray(samples, dtype=np.int32)
    gated = np.where(np.abs(values) < threshold, 0, values)
    scaled = np.rint(gated.astype(np.float64) * gain)
    return np.clip(scaled, INT16_MIN, INT16_MAX).astype(np.int16)


def upsample(samples: np.ndarray, factor: int = 2, previous: int | None = None) -> np.ndarray:
    """
    Linear interpolation: sample i is kept at i * factor, followed by factor - 1 points
    on the line to sample i + 1. The last sample has no successor and is held.

    With `previous` (last sample of the preceding frame) the lines run from previous → s0,
    s0 → s1, ..., s[n-2] → s[n-1] instead: output lags by one source sample but joins the
    preceding frame without a step. Length is N * factor either way.
    """
    if factor < 1:
        raise ValueError(f"upsample factor must be >= 1, got {factor}")
    values = np.asarray(samples, dtype=np.float64)
    if values.size == 0 or factor == 1:
        return values.astype(np.int16)
    if previous is None:
        following = np.append(values[1:], values[-1])
    else:
        following = values
        values = np.insert(values[:-1], 0, float(previous))
    steps = np.arange(factor, dtype=np.float64) / factor
    out = values[:, None] + (following - values)[:, None] * steps[None, :]
    return np.rint(out).reshape(-1).astype(np.int16)


def pcm_to_bytes(samples: np.ndarray) -> bytes:
    """int16 samples → little-endian PCM bytes."""
    return np.asarray(samples, dtype=np.int16).astype("<i2").tobytes()


def bytes_to_pcm(pcm_bytes: bytes) -> np.ndarray:
    """Little-endian PCM bytes → int16 samples."""
    return np.frombuffer(pcm_bytes, dtype="<i2").astype(np.int16)


def convert_frame(
    payload: bytes,
    *,
    source_rate: int = 8000,
    factor: int = 2,
    gate_threshold: int = 64,
    gain: float = 1.5,
) -> PcmChunk:
    """Full ingestion step for one media payload: decode → gate/gain → upsample."""
    pcm = decode(payload)
    pcm = apply_noise_gate(pcm, gate_threshold, gain)
    pcm = upsample(pcm, factor)
    return PcmChunk(samples=pcm_to_bytes(pcm), sample_rate=source_rate * factor)


class FrameConverter:
    """
    convert_frame for one continuous stream. Keeps the last gated sample of each frame so
    interpolation carries across the 20 ms frame boundaries.
    """

    def __init__(
        self,
        source_rate: int = 8000,
        factor: int = 2,
        gate_threshold: int = 64,
        gain: float = 1.5,
    ) -> None:
        self._source_rate = source_rate
        self._factor = factor
        self._gate_threshold = gate_threshold
        self._gain = gain
        self._previous: int | None = None

    def convert(self, payload: bytes) -> PcmChunk:
        pcm = apply_noise_gate(decode(payload), self._gate_threshold, self._gain)
        if pcm.size:
            # First frame of a stream: hold its own first sample
            previous = self._previous if self._previous is not None else int(pcm[0])
            self._previous = int(pcm[-1])
            pcm = upsample(pcm, self._factor, previous=previous)
        return PcmChunk(samples=pcm_to_bytes(pcm), sample_rate=self._source_rate * self._factor)


def wrap_wav(pcm_bytes: bytes, sample_rate: int, channels: int = 1, sample_width: int = 2) -> bytes:
    """Wrap raw PCM in a 44-byte WAV header. One open, one write, one close."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm_bytes)
    return buf.getvalue()
