"""Audio pipeline: mu-law decode, gate/gain, upsample; per-session chunk buffer."""
from .frames import AudioFrame, PcmChunk
from .codec import FrameConverter, convert_frame, decode, encode, upsample, wrap_wav
from .chunk_buffer import ChunkBuffer

__all__ = [
    "AudioFrame",
    "ChunkBuffer",
    "FrameConverter",
    "PcmChunk",
    "convert_frame",
    "decode",
    "encode",
    "upsample",
    "wrap_wav",
]
