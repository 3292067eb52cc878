"""
ConnectionRouter: decides what each WebSocket connection is and routes its messages.

Classification at connect time, first match wins:
1. URL: /stream/<call_id> or ?callSid= / ?call_id= → media; /ws, /dashboard or ?role=observer → observer
2. Offered subprotocol token (MEDIA_SUBPROTOCOLS / OBSERVER_SUBPROTOCOLS)
3. User-Agent containing a telephony marker (MEDIA_USER_AGENT_MARKERS) → media
4. Otherwise observer. Unreadable metadata is also treated as observer.

A connection classified observer that then sends a media-stream-shaped frame is reclassified
to media once: it leaves the observer set, gets a session, and the triggering frame is
processed as media. Reclassification never goes the other way.
"""
from __future__ import annotations

import base64
import binascii
import itertools
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from callscribe.audio.frames import AudioFrame
from callscribe.broadcast import BroadcastHub, ObserverConnection
from callscribe.config import Settings, split_csv
from callscribe.errors import MalformedFrameError
from callscribe.pipeline import CallPipeline
from callscribe.schemas.media import MediaStreamEvent, looks_like_media_event
from callscribe.schemas.observer import ObserverCommand, make_event
from callscribe.session_store import SessionRegistry, generate_recovery_id
from callscribe.transcription.dispatcher import TranscriptionDispatcher

logger = logging.getLogger(__name__)

_ids = itertools.count(1)

_OBSERVER_PATHS = ("/ws", "/dashboard")
_STREAM_PREFIX = "/stream/"


class ConnectionRole(str, Enum):
    MEDIA = "media"
    OBSERVER = "observer"


@dataclass
class ConnectionMetadata:
    path: str = "/"
    query: dict[str, str] = field(default_factory=dict)
    subprotocols: list[str] = field(default_factory=list)
    user_agent: str = ""
    malformed: bool = False

    @classmethod
    def from_websocket(cls, websocket: Any) -> "ConnectionMetadata":
        try:
            headers = websocket.headers
            offered = split_csv(headers.get("sec-websocket-protocol", ""))
            return cls(
                path=websocket.url.path or "/",
                query=dict(websocket.query_params),
                subprotocols=offered,
                user_agent=headers.get("user-agent", ""),
            )
        except Exception as e:
            logger.warning("Unreadable connection metadata (%s); treating as observer", e)
            return cls(malformed=True)

    @property
    def call_id(self) -> str | None:
        if self.path.startswith(_STREAM_PREFIX):
            tail = self.path[len(_STREAM_PREFIX):].strip("/")
            if tail:
                return tail
        return self.query.get("callSid") or self.query.get("call_id") or None


@dataclass
class ConnectionState:
    connection_id: str
    websocket: Any
    metadata: ConnectionMetadata
    role: ConnectionRole
    call_id: str | None = None
    pipeline: CallPipeline | None = None
    observer: ObserverConnection | None = None
    reclassified: bool = False
    closed: bool = False


class ConnectionRouter:
    """Shared across connections; per-connection data lives on ConnectionState."""

    def __init__(
        self,
        registry: SessionRegistry,
        dispatcher: TranscriptionDispatcher,
        hub: BroadcastHub,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.hub = hub
        self.settings = settings
        self._media_protocols = {p.lower() for p in split_csv(settings.MEDIA_SUBPROTOCOLS)}
        self._observer_protocols = {p.lower() for p in split_csv(settings.OBSERVER_SUBPROTOCOLS)}
        self._ua_markers = [m.lower() for m in split_csv(settings.MEDIA_USER_AGENT_MARKERS)]
        self._pipelines: dict[str, CallPipeline] = {}

    # ------------------------------------------------------------------ classification

    def classify(self, metadata: ConnectionMetadata) -> ConnectionRole:
        if metadata.malformed:
            return ConnectionRole.OBSERVER

        if metadata.call_id:
            return ConnectionRole.MEDIA
        path = metadata.path.rstrip("/") or "/"
        if path in _OBSERVER_PATHS or metadata.query.get("role") == "observer":
            return ConnectionRole.OBSERVER

        for token in metadata.subprotocols:
            if token.lower() in self._media_protocols:
                return ConnectionRole.MEDIA
            if token.lower() in self._observer_protocols:
                return ConnectionRole.OBSERVER

        ua = metadata.user_agent.lower()
        if ua and any(marker in ua for marker in self._ua_markers):
            return ConnectionRole.MEDIA

        return ConnectionRole.OBSERVER

    def select_subprotocol(self, metadata: ConnectionMetadata) -> str | None:
        """Offered token we recognise, echoed back on accept."""
        known = self._media_protocols | self._observer_protocols
        for token in metadata.subprotocols:
            if token.lower() in known:
                return token
        return None

    # ------------------------------------------------------------------ lifecycle

    async def accept(self, websocket: Any, metadata: ConnectionMetadata) -> ConnectionState:
        """Register an already-accepted socket under its initial role."""
        role = self.classify(metadata)
        state = ConnectionState(
            connection_id=f"conn-{next(_ids)}",
            websocket=websocket,
            metadata=metadata,
            role=role,
        )
        logger.info(
            "Connection %s classified %s (path=%s, ua=%r)",
            state.connection_id, role.value, metadata.path, metadata.user_agent[:60],
        )
        if role is ConnectionRole.OBSERVER:
            self._attach_observer(state)
        elif metadata.call_id:
            self._open_session(state, metadata.call_id)
        return state

    def _attach_observer(self, state: ConnectionState) -> None:
        state.observer = self.hub.register(state.websocket)
        self.hub.send(
            state.observer,
            make_event(
                "welcome",
                {
                    "connection_id": state.connection_id,
                    "active_calls": self.registry.active_summaries(),
                },
            ),
        )

    def _open_session(self, state: ConnectionState, call_id: str, recovered: bool = False) -> CallPipeline:
        """Claim (or create) the session for call_id and bind it to this connection."""
        session = self.registry.claim(call_id, owner=state.connection_id)
        session.recovered = recovered
        pipeline = CallPipeline(session, self.registry, self.dispatcher, self.hub, self.settings)
        state.call_id = call_id
        state.pipeline = pipeline
        self._pipelines[call_id] = pipeline
        return pipeline

    async def disconnect(self, state: ConnectionState) -> None:
        """Release whatever the connection holds. Safe to call more than once."""
        if state.closed:
            return
        state.closed = True
        if state.observer is not None:
            await self.hub.unregister(state.observer)
            state.observer = None
        if state.pipeline is not None:
            pipeline = state.pipeline
            try:
                await pipeline.stop("disconnect")
            finally:
                if self._pipelines.get(pipeline.call_id) is pipeline:
                    del self._pipelines[pipeline.call_id]
        logger.info("Connection %s closed (%s)", state.connection_id, state.role.value)

    async def shutdown(self) -> None:
        """Stop every live session (application shutdown)."""
        for pipeline in list(self._pipelines.values()):
            await pipeline.stop("shutdown")
        self._pipelines.clear()

    # ------------------------------------------------------------------ messages

    async def handle_message(self, state: ConnectionState, raw: str) -> None:
        if state.role is ConnectionRole.MEDIA:
            await self._handle_media(state, raw)
        else:
            await self._handle_observer(state, raw)

    async def _handle_observer(self, state: ConnectionState, raw: str) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Observer %s sent invalid JSON (%s); ignored", state.connection_id, e)
            return

        if looks_like_media_event(data):
            self.reclassify(state, data)
            await self._handle_media(state, raw, data)
            return

        try:
            command = ObserverCommand.model_validate(data)
        except ValidationError:
            logger.debug("Observer %s sent unrecognised frame: %.200s", state.connection_id, raw)
            return

        if state.observer is None:
            return
        if command.type == "ping":
            self.hub.send(state.observer, make_event("pong"))
        elif command.type == "get_active_calls":
            self.hub.send(state.observer, make_event("active_calls", {"calls": self.registry.active_summaries()}))
        else:
            logger.debug("Observer %s: unknown command %r", state.connection_id, command.type)

    def reclassify(self, state: ConnectionState, data: dict[str, Any]) -> None:
        """Observer → media, once. Already-media connections are left alone."""
        if state.role is ConnectionRole.MEDIA:
            return
        logger.warning(
            "Connection %s sent a %r media frame; reclassifying observer → media",
            state.connection_id, data.get("event"),
        )
        if state.observer is not None:
            self.hub.detach(state.observer)
            state.observer = None
        state.role = ConnectionRole.MEDIA
        state.reclassified = True

    async def _handle_media(self, state: ConnectionState, raw: str, data: Any = None) -> None:
        if data is None:
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, TypeError) as e:
                raise MalformedFrameError(f"invalid JSON on media connection: {e}") from e
        if not isinstance(data, dict):
            raise MalformedFrameError("media frame is not a JSON object")

        try:
            event = MediaStreamEvent.model_validate(data)
        except ValidationError as e:
            logger.warning(
                "Connection %s: media frame without a usable event (%d error(s)); skipped",
                state.connection_id, e.error_count(),
            )
            return

        if event.event == "start":
            self._on_start(state, event)
        elif event.event == "media":
            self._on_media(state, event)
        elif event.event == "stop":
            logger.info("Stream stop for %s", state.call_id)
            if state.pipeline is not None:
                await state.pipeline.stop("stop")
        elif event.event in ("connected", "mark", "dtmf"):
            logger.debug("Connection %s: %s event", state.connection_id, event.event)
        else:
            logger.debug("Connection %s: ignoring unknown event %r", state.connection_id, event.event)

    def _salvage_call_id(self, state: ConnectionState, event: MediaStreamEvent) -> tuple[str, bool]:
        """Best available call ID for a stream; (id, recovered)."""
        explicit = event.call_sid or state.metadata.call_id
        if explicit:
            return explicit, False
        if event.streamSid:
            return f"stream-{event.streamSid}", True
        return generate_recovery_id(), True

    def _on_start(self, state: ConnectionState, event: MediaStreamEvent) -> None:
        start = event.start
        stream_sid = event.streamSid or (start.streamSid if start is not None else None)
        tracks = list(start.tracks) if start is not None else []

        if state.pipeline is None:
            call_id, recovered = self._salvage_call_id(state, event)
            self._open_session(state, call_id, recovered=recovered)
        elif event.call_sid and event.call_sid != state.call_id:
            logger.warning(
                "Connection %s: start for %s on a stream bound to %s; ignored",
                state.connection_id, event.call_sid, state.call_id,
            )
            return
        state.pipeline.start(stream_sid=stream_sid, tracks=tracks)

    def _on_media(self, state: ConnectionState, event: MediaStreamEvent) -> None:
        media = event.media
        if media is None or not media.payload:
            logger.debug("Connection %s: media frame without payload; skipped", state.connection_id)
            return
        try:
            payload = base64.b64decode(media.payload, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("Connection %s: undecodable media payload (%s); skipped", state.connection_id, e)
            return

        if state.pipeline is None:
            # Media before start: synthesize a session rather than drop audio
            call_id, recovered = self._salvage_call_id(state, event)
            logger.warning("Connection %s: media before start; opening session %s", state.connection_id, call_id)
            self._open_session(state, call_id, recovered=recovered)
        if not state.pipeline.started:
            state.pipeline.start(stream_sid=event.streamSid)

        state.pipeline.handle_frame(
            AudioFrame(payload=payload, sequence_number=event.sequence_number, track=media.track)
        )
