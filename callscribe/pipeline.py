"""
CallPipeline: drives one CallSession from start to teardown.

Ingestion (synchronous, never suspends):
    AudioFrame → codec.FrameConverter (per stream) → ChunkBuffer.append
Transcription (tasks, one per flushed request):
    ChunkBuffer.flush → TranscriptionDispatcher.submit → reorder by sequence
    → quality filter → SentenceAggregator → BroadcastHub (live_transcript)
Timers owned by the session, cancelled on stop:
    flush timer (CHUNK_INTERVAL_SECONDS), aggregator tick (AGGREGATOR_TICK_SECONDS),
    results watchdog (RESULTS_WATCHDOG_SECONDS).

Provider responses may finish out of order; they are released to the aggregator strictly
in request sequence order so text order follows audio order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from callscribe.audio.codec import FrameConverter
from callscribe.audio.frames import AudioFrame
from callscribe.broadcast import BroadcastHub
from callscribe.config import Settings, split_csv
from callscribe.schemas.observer import make_event
from callscribe.session_store import CallSession, SessionRegistry, SessionState
from callscribe.transcript.aggregator import TranscriptSegment
from callscribe.transcript.filters import rejection_reason
from callscribe.transcription.base import TranscriptChunk, TranscriptionRequest
from callscribe.transcription.dispatcher import TranscriptionDispatcher

logger = logging.getLogger(__name__)

_FRAME_LOG_EVERY = 100


class CallPipeline:
    """
    One per CallSession. All methods run on the event loop; the session's buffers are only
    touched from here.
    """

    def __init__(
        self,
        session: CallSession,
        registry: SessionRegistry,
        dispatcher: TranscriptionDispatcher,
        hub: BroadcastHub,
        settings: Settings,
    ) -> None:
        self.session = session
        self._registry = registry
        self._dispatcher = dispatcher
        self._hub = hub
        self._settings = settings
        self._accepted_tracks = {t.lower() for t in split_csv(settings.MEDIA_ACCEPTED_TRACKS)}
        self._converter = FrameConverter(
            source_rate=settings.SOURCE_SAMPLE_RATE,
            factor=settings.UPSAMPLE_FACTOR,
            gate_threshold=settings.NOISE_GATE_THRESHOLD,
            gain=settings.AUDIO_GAIN,
        )

        self._timers: list[asyncio.Task[Any]] = []
        self._in_flight: set[asyncio.Task[Any]] = set()
        # Reorder buffer: sequence → chunk (None = request ended without text)
        self._finished: dict[int, TranscriptChunk | None] = {}
        self._next_release = 0

        self._started = False
        self._stopping: asyncio.Task[None] | None = None
        self._last_result_at: float | None = None
        self._first_dispatch_at: float | None = None
        self._stall_logged = False

    @property
    def call_id(self) -> str:
        return self.session.call_id

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------ lifecycle

    def start(self, stream_sid: str | None = None, tracks: list[str] | None = None) -> None:
        """ACTIVE; start the session timers; announce to observers. No-op if already started or stopping."""
        if self._started or self._stopping is not None:
            return
        self._started = True
        self.session.state = SessionState.ACTIVE
        if stream_sid:
            self.session.stream_sid = stream_sid
        if tracks:
            self.session.tracks = list(tracks)
        self.session.touch()

        s = self._settings
        self._timers = [
            asyncio.create_task(self._every(s.CHUNK_INTERVAL_SECONDS, self._flush_tick)),
            asyncio.create_task(self._every(s.AGGREGATOR_TICK_SECONDS, self._aggregator_tick)),
            asyncio.create_task(self._every(s.RESULTS_WATCHDOG_SECONDS / 2, self._watchdog_tick)),
        ]
        logger.info(
            "Session %s active (stream=%s, tracks=%s%s)",
            self.call_id, self.session.stream_sid, self.session.tracks,
            ", recovered" if self.session.recovered else "",
        )
        self._hub.broadcast(
            make_event(
                "stream_started",
                {
                    "call_id": self.call_id,
                    "stream_sid": self.session.stream_sid,
                    "tracks": self.session.tracks,
                    "recovered": self.session.recovered,
                },
            )
        )

    async def stop(self, reason: str = "stop") -> None:
        """Teardown; concurrent or repeated calls all wait on the same single run."""
        if self._stopping is None:
            self._stopping = asyncio.create_task(self._teardown(reason))
        await asyncio.shield(self._stopping)

    async def _teardown(self, reason: str) -> None:
        session = self.session
        logger.info("Session %s stopping (%s)", self.call_id, reason)
        try:
            session.state = SessionState.DRAINING
            for timer in self._timers:
                timer.cancel()
            await asyncio.gather(*self._timers, return_exceptions=True)
            self._timers = []

            # Final flush: trailing audio is always submitted, whatever its size
            self.flush_audio()

            if self._in_flight:
                _, pending = await asyncio.wait(
                    set(self._in_flight), timeout=self._settings.DRAIN_TIMEOUT_SECONDS
                )
                if pending:
                    logger.warning(
                        "Session %s: %d transcription request(s) still running after drain timeout",
                        self.call_id, len(pending),
                    )

            segment = session.aggregator.flush()
            if segment is not None:
                self._deliver(segment)
        except Exception:
            logger.exception("Session %s: error while draining", self.call_id)
        finally:
            session.state = SessionState.CLOSED
            self._registry.remove(session)
            if self._started:
                self._hub.broadcast(
                    make_event(
                        "stream_ended",
                        {
                            "call_id": self.call_id,
                            "reason": reason,
                            "full_transcript": " ".join(session.segments),
                            "frames_received": session.frames_received,
                        },
                    )
                )
            logger.info(
                "Session %s closed: %d frames, %d segments",
                self.call_id, session.frames_received, len(session.segments),
            )

    # ------------------------------------------------------------------ ingestion

    def handle_frame(self, frame: AudioFrame) -> None:
        """Decode and buffer one frame. Synchronous: frames are processed in arrival order."""
        session = self.session
        if session.state not in (SessionState.ACTIVE, SessionState.STARTING):
            session.frames_skipped += 1
            return
        if frame.track and self._accepted_tracks and frame.track.lower() not in self._accepted_tracks:
            session.frames_skipped += 1
            return

        pcm = self._converter.convert(frame.payload)
        session.frames_received += 1
        session.touch()
        if session.frames_received == 1 or session.frames_received % _FRAME_LOG_EVERY == 0:
            logger.debug(
                "Session %s: frame %d (%d mu-law → %d PCM bytes)",
                self.call_id, session.frames_received, len(frame.payload), len(pcm.samples),
            )

        request = session.chunk_buffer.append(pcm)
        if request is not None:
            self._dispatch(request)

    def flush_audio(self) -> TranscriptionRequest | None:
        """Package buffered audio into one request and dispatch it. None if the buffer was empty."""
        request = self.session.chunk_buffer.flush()
        if request is not None:
            self._dispatch(request)
        return request

    # ------------------------------------------------------------------ transcription

    def _dispatch(self, request: TranscriptionRequest) -> None:
        logger.debug(
            "Session %s: dispatching chunk #%d (%.2fs)",
            self.call_id, request.sequence, request.duration_seconds,
        )
        if self._first_dispatch_at is None:
            self._first_dispatch_at = time.monotonic()
        task = asyncio.create_task(self._transcribe(request))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _transcribe(self, request: TranscriptionRequest) -> None:
        chunk: TranscriptChunk | None = None
        try:
            chunk = await self._dispatcher.submit(request)
        except Exception:
            logger.exception("Session %s: transcription of chunk #%d crashed", self.call_id, request.sequence)
        self._release(request.sequence, chunk)

    def _release(self, sequence: int, chunk: TranscriptChunk | None) -> None:
        """Hand finished chunks to the aggregator in sequence order."""
        self._finished[sequence] = chunk
        while self._next_release in self._finished:
            ready = self._finished.pop(self._next_release)
            self._next_release += 1
            if ready is not None:
                self._on_chunk(ready)

    def _on_chunk(self, chunk: TranscriptChunk) -> None:
        session = self.session
        if self._registry.get(session.call_id) is not session or session.state is SessionState.CLOSED:
            logger.debug("Session %s gone; discarding late chunk #%d", chunk.call_id, chunk.sequence)
            return
        reason = rejection_reason(chunk, self._settings.MIN_TRANSCRIPT_CONFIDENCE)
        if reason is not None:
            logger.debug("Session %s: chunk #%d filtered (%s): %r", self.call_id, chunk.sequence, reason, chunk.text)
            return
        self._last_result_at = time.monotonic()
        self._stall_logged = False
        segment = session.aggregator.on_chunk(chunk)
        if segment is not None:
            self._deliver(segment)

    def _deliver(self, segment: TranscriptSegment) -> None:
        self.session.segments.append(segment.text)
        logger.info("Session %s [%s] %s", self.call_id, segment.reason.value, segment.text)
        self._hub.broadcast(
            make_event(
                "live_transcript",
                {
                    "call_id": self.call_id,
                    "text": segment.text,
                    "confidence": round(segment.confidence, 3),
                    "reason": segment.reason.value,
                    "buffer_age_ms": int(segment.buffer_age_seconds * 1000),
                    "is_final": True,
                },
            )
        )

    # ------------------------------------------------------------------ timers

    async def _every(self, interval: float, tick: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                tick()
            except Exception:
                logger.exception("Session %s: timer tick failed", self.call_id)

    def _flush_tick(self) -> None:
        self.flush_audio()

    def _aggregator_tick(self) -> None:
        segment = self.session.aggregator.evaluate()
        if segment is not None:
            self._deliver(segment)

    def _watchdog_tick(self) -> None:
        if self._first_dispatch_at is None or self._stall_logged:
            return
        since = self._last_result_at or self._first_dispatch_at
        waited = time.monotonic() - since
        if waited > self._settings.RESULTS_WATCHDOG_SECONDS:
            self._stall_logged = True
            logger.warning(
                "Session %s: no transcript for %.1fs (%d frames, %d requests in flight)",
                self.call_id, waited, self.session.frames_received, len(self._in_flight),
            )
