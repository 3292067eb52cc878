"""
TranscriptionDispatcher: runs one TranscriptionRequest through the provider.

State machine per request:
    PENDING --submit ok--> polling (fixed interval, bounded attempts / deadline)
    polling --status completed--> COMPLETED (returns TranscriptChunk)
    polling --status error-------> FAILED
    polling --attempts/deadline--> TIMED_OUT
    PENDING --submit raised------> FAILED
Failures never propagate: the caller gets None and the next flush supersedes the lost audio.
Sleep and clock are injectable so the loop is testable without real time.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Awaitable, Callable

import httpx

from callscribe.errors import ProviderError
from callscribe.transcription.base import (
    RequestState,
    TranscriptChunk,
    TranscriptionProvider,
    TranscriptionRequest,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class TranscriptionDispatcher:
    """Shared by all sessions; holds no per-session state."""

    def __init__(
        self,
        provider: TranscriptionProvider,
        poll_interval: float = 1.0,
        max_attempts: int = 15,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._poll_interval = poll_interval
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._clock = clock
        self.outcomes: Counter[str] = Counter()

    @property
    def provider(self) -> TranscriptionProvider:
        return self._provider

    def _finish(self, request: TranscriptionRequest, state: RequestState, error: str | None = None) -> None:
        request.finish(state, error)
        self.outcomes[state.value] += 1

    async def submit(self, request: TranscriptionRequest) -> TranscriptChunk | None:
        """Submit, poll to a terminal state, return the chunk on success. Never raises provider errors."""
        if request.is_terminal:
            logger.warning(
                "Request %s#%d already %s; not resubmitting",
                request.call_id, request.sequence, request.state.value,
            )
            return None
        try:
            return await self._run(request)
        except Exception as e:
            # Unexpected provider behaviour still ends the request
            if not request.is_terminal:
                self._finish(request, RequestState.FAILED, repr(e))
            logger.warning(
                "Transcription of %s#%d failed unexpectedly: %r", request.call_id, request.sequence, e
            )
            return None

    async def _run(self, request: TranscriptionRequest) -> TranscriptChunk | None:
        now = self._clock()
        request.submitted_at = now
        request.deadline = now + self._poll_interval * self._max_attempts

        try:
            request.job_id = await self._provider.submit(request.audio)
        except (ProviderError, httpx.HTTPError) as e:
            self._finish(request, RequestState.FAILED, str(e))
            logger.warning("Transcription submit failed for %s#%d: %s", request.call_id, request.sequence, e)
            return None

        for attempt in range(1, self._max_attempts + 1):
            await self._sleep(self._poll_interval)
            try:
                status = await self._provider.fetch(request.job_id)
            except (ProviderError, httpx.HTTPError) as e:
                logger.debug(
                    "Status poll %d for job %s failed: %s", attempt, request.job_id, e
                )
            else:
                if status.is_completed:
                    self._finish(request, RequestState.COMPLETED)
                    return TranscriptChunk(
                        call_id=request.call_id,
                        sequence=request.sequence,
                        text=status.text,
                        confidence=status.confidence,
                        provider_id=request.job_id,
                    )
                if status.is_error:
                    self._finish(request, RequestState.FAILED, status.error or "provider error")
                    logger.warning(
                        "Transcription job %s for %s#%d failed: %s",
                        request.job_id, request.call_id, request.sequence, status.error,
                    )
                    return None
            if self._clock() >= request.deadline:
                break

        self._finish(request, RequestState.TIMED_OUT, "deadline exceeded")
        logger.warning(
            "Transcription job %s for %s#%d timed out after %d polls",
            request.job_id, request.call_id, request.sequence, attempt,
        )
        return None
