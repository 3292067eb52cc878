"""Transcription: provider interface, HTTP provider, bounded-poll dispatcher."""
from .base import JobStatus, RequestState, TranscriptChunk, TranscriptionProvider, TranscriptionRequest
from .assemblyai import AssemblyAIProvider, create_transcription_provider
from .dispatcher import TranscriptionDispatcher

__all__ = [
    "AssemblyAIProvider",
    "JobStatus",
    "RequestState",
    "TranscriptChunk",
    "TranscriptionDispatcher",
    "TranscriptionProvider",
    "TranscriptionRequest",
    "create_transcription_provider",
]
