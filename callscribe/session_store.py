"""
In-memory session registry: call ID → CallSession.

One CallSession per active media stream. The registry is the only owner of the map and
refuses a second live session for the same call ID (DuplicateSessionError) instead of
overwriting it. A call-setup webhook may pre-register a call; the stream that later names
that call ID claims the pre-registered entry.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from callscribe.audio.chunk_buffer import ChunkBuffer
from callscribe.errors import DuplicateSessionError
from callscribe.transcript.aggregator import SentenceAggregator

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


def generate_recovery_id() -> str:
    """Call ID for a stream whose messages carry none."""
    return f"recovered-{uuid.uuid4().hex[:12]}"


@dataclass
class CallSession:
    """Per-call state, created whole: buffers exist from the first moment the session does."""

    call_id: str
    chunk_buffer: ChunkBuffer
    aggregator: SentenceAggregator
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    created_monotonic: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    state: SessionState = SessionState.STARTING
    owner: str | None = None  # connection id that claimed the session
    stream_sid: str | None = None
    tracks: list[str] = field(default_factory=list)
    recovered: bool = False
    frames_received: int = 0
    frames_skipped: int = 0
    segments: list[str] = field(default_factory=list)

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    @property
    def is_live(self) -> bool:
        return self.state in (SessionState.ACTIVE, SessionState.DRAINING)

    def summary(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "state": self.state.value,
            "stream_sid": self.stream_sid,
            "tracks": list(self.tracks),
            "started_at": self.created_at.isoformat(),
            "frames_received": self.frames_received,
            "segments": len(self.segments),
            "recovered": self.recovered,
        }


class SessionRegistry:
    """Owns call ID → CallSession. Mutated only from the event loop."""

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_max_bytes: int | None = None,
        aggregator_max_age: float = 4.0,
        aggregator_min_words: int = 15,
        preregister_ttl: float = 300.0,
    ) -> None:
        self._sessions: dict[str, CallSession] = {}
        self._sample_rate = sample_rate
        self._chunk_max_bytes = chunk_max_bytes
        self._aggregator_max_age = aggregator_max_age
        self._aggregator_min_words = aggregator_min_words
        self._preregister_ttl = preregister_ttl

    @classmethod
    def from_settings(cls, settings) -> "SessionRegistry":
        return cls(
            sample_rate=settings.target_sample_rate,
            chunk_max_bytes=settings.chunk_max_bytes,
            aggregator_max_age=settings.AGGREGATOR_MAX_AGE_SECONDS,
            aggregator_min_words=settings.AGGREGATOR_MIN_WORDS,
            preregister_ttl=settings.PREREGISTER_TTL_SECONDS,
        )

    def _new_session(self, call_id: str) -> CallSession:
        return CallSession(
            call_id=call_id,
            chunk_buffer=ChunkBuffer(call_id, sample_rate=self._sample_rate, max_bytes=self._chunk_max_bytes),
            aggregator=SentenceAggregator(
                call_id,
                max_age_seconds=self._aggregator_max_age,
                min_words=self._aggregator_min_words,
            ),
        )

    def _prune_expired(self) -> None:
        now = time.monotonic()
        expired = [
            call_id
            for call_id, s in self._sessions.items()
            if s.state is SessionState.STARTING
            and s.owner is None
            and now - s.created_monotonic > self._preregister_ttl
        ]
        for call_id in expired:
            logger.info("Pre-registered call %s never streamed; dropping", call_id)
            del self._sessions[call_id]

    def preregister(self, call_id: str) -> CallSession:
        """Register a call announced by call setup. Idempotent while unclaimed."""
        self._prune_expired()
        existing = self._sessions.get(call_id)
        if existing is not None:
            if existing.state is SessionState.STARTING:
                return existing
            raise DuplicateSessionError(call_id)
        session = self._new_session(call_id)
        self._sessions[call_id] = session
        logger.info("Call %s pre-registered", call_id)
        return session

    def claim(self, call_id: str, owner: str) -> CallSession:
        """
        Bind a session to a media connection: adopt an unclaimed pre-registered entry or create one.
        Raises DuplicateSessionError if another connection (or this one, via a second start) holds it.
        """
        self._prune_expired()
        existing = self._sessions.get(call_id)
        if existing is not None:
            if existing.state is SessionState.STARTING and existing.owner is None:
                existing.owner = owner
                return existing
            raise DuplicateSessionError(call_id)
        session = self._new_session(call_id)
        session.owner = owner
        self._sessions[call_id] = session
        return session

    def get(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    def remove(self, session: CallSession) -> bool:
        """Remove this exact session object. A newer session under the same ID is left alone."""
        if self._sessions.get(session.call_id) is session:
            del self._sessions[session.call_id]
            return True
        return False

    def sessions(self) -> list[CallSession]:
        return list(self._sessions.values())

    def active_summaries(self) -> list[dict[str, Any]]:
        return [s.summary() for s in self._sessions.values() if s.state is not SessionState.CLOSED]

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
