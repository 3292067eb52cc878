"""
TranscriptionProvider: abstract interface for chunked, job-based speech-to-text.

Shape every provider must fit: submit(audio) → job id; fetch(job id) → JobStatus
{status, text, confidence}. Implementations: AssemblyAIProvider (HTTP, bearer token).
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from callscribe.errors import InvalidTransitionError


class RequestState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class TranscriptionRequest:
    """
    One flushed audio chunk for one call. Moves PENDING → COMPLETED | FAILED | TIMED_OUT
    exactly once; a terminal request is never resubmitted.
    """

    call_id: str
    sequence: int
    audio: bytes  # WAV container
    duration_seconds: float
    created_at: float = field(default_factory=time.monotonic)
    submitted_at: float | None = None
    deadline: float | None = None
    job_id: str | None = None
    state: RequestState = RequestState.PENDING
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not RequestState.PENDING

    def finish(self, state: RequestState, error: str | None = None) -> None:
        if state is RequestState.PENDING:
            raise InvalidTransitionError("cannot move a request back to pending")
        if self.is_terminal:
            raise InvalidTransitionError(
                f"request {self.call_id}#{self.sequence} already {self.state.value}"
            )
        self.state = state
        self.error = error


@dataclass
class TranscriptChunk:
    """Raw recognized text for one request, before sentence aggregation."""

    call_id: str
    sequence: int
    text: str
    confidence: float
    provider_id: str | None = None
    is_final: bool = True


@dataclass
class JobStatus:
    """Provider job status snapshot."""

    status: str  # "queued" | "processing" | "completed" | "error"
    text: str = ""
    confidence: float = 0.0
    error: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_error(self) -> bool:
        return self.status == "error"


class TranscriptionProvider(ABC):
    """
    Abstract chunk transcription provider. Both calls are async and may raise
    ProviderError or httpx.HTTPError; the dispatcher owns retry/timeout policy.
    """

    @abstractmethod
    async def submit(self, audio: bytes) -> str:
        """Upload one WAV chunk and start a job. Returns the provider job id."""
        ...

    @abstractmethod
    async def fetch(self, job_id: str) -> JobStatus:
        """Return current status of a job."""
        ...

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to close."""
        return None
