"""
FastAPI app: telephony media streams in, live transcripts out.

WebSocket (/, /ws, /stream/{call_id}): one endpoint for both kinds of client. Media streams send
JSON events (start, media with base64 mu-law, stop); observers (dashboards) send {type, data}
commands and receive {type, data} events: welcome, stream_started, live_transcript,
stream_ended, pong, active_calls.

HTTP: GET /health, GET /api/calls, POST /api/calls/{call_id} (pre-register from call setup).
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from callscribe.broadcast import BroadcastHub
from callscribe.config import Settings, get_settings
from callscribe.errors import DuplicateSessionError, MalformedFrameError
from callscribe.logging_utils import setup_logging
from callscribe.session_store import SessionRegistry
from callscribe.transcription.assemblyai import create_transcription_provider
from callscribe.transcription.base import TranscriptionProvider
from callscribe.transcription.dispatcher import TranscriptionDispatcher
from callscribe.websocket_manager import ConnectionMetadata, ConnectionRouter

logger = logging.getLogger(__name__)

# Set in lifespan so WebSocket routes can reach the router without Request
_current_app: FastAPI | None = None


def get_router(app: FastAPI | None = None) -> ConnectionRouter:
    a = app or _current_app
    if a is None:
        raise RuntimeError("App not initialized (lifespan not run?)")
    return a.state.router


def create_app(settings: Settings | None = None, provider: TranscriptionProvider | None = None) -> FastAPI:
    """Build the app. Tests pass settings and a fake provider; production uses env settings."""
    settings = settings if settings is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global _current_app
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        engine = provider if provider is not None else create_transcription_provider(settings)
        dispatcher = TranscriptionDispatcher(
            engine,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            max_attempts=settings.POLL_MAX_ATTEMPTS,
        )
        hub = BroadcastHub(max_queue=settings.OBSERVER_QUEUE_SIZE)
        registry = SessionRegistry.from_settings(settings)
        app.state.settings = settings
        app.state.hub = hub
        app.state.registry = registry
        app.state.dispatcher = dispatcher
        app.state.router = ConnectionRouter(registry, dispatcher, hub, settings)
        _current_app = app
        logger.info(
            "callscribe ready: provider=%s, %d Hz → %d Hz, chunk every %.1fs",
            settings.TRANSCRIPTION_PROVIDER, settings.SOURCE_SAMPLE_RATE,
            settings.target_sample_rate, settings.CHUNK_INTERVAL_SECONDS,
        )
        yield
        # Shutdown: drain live sessions, then release observers and the HTTP client
        await app.state.router.shutdown()
        await hub.close()
        await engine.aclose()
        logger.info("callscribe stopped; transcription outcomes: %s", dict(dispatcher.outcomes))
        _current_app = None

    app = FastAPI(
        title="callscribe",
        description="Live call transcription: telephony media streams → dashboard observers",
        lifespan=lifespan,
    )

    async def serve_connection(websocket: WebSocket) -> None:
        router = get_router(websocket.app)
        metadata = ConnectionMetadata.from_websocket(websocket)
        await websocket.accept(subprotocol=router.select_subprotocol(metadata))
        state = None
        try:
            state = await router.accept(websocket, metadata)
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                text = msg.get("text")
                if text is None and msg.get("bytes") is not None:
                    text = msg["bytes"].decode("utf-8", errors="replace")
                if text is None:
                    continue
                await router.handle_message(state, text)
        except WebSocketDisconnect:
            pass
        except DuplicateSessionError as e:
            logger.warning("Rejecting stream: %s", e)
            await websocket.close(code=1008)
        except MalformedFrameError as e:
            logger.warning("Closing media connection: %s", e)
            await websocket.close(code=1003)
        except Exception:
            logger.exception("WebSocket connection failed")
            try:
                await websocket.close(code=1011)
            except RuntimeError as e:
                logger.debug("Close after failure: %s", e)
        finally:
            if state is not None:
                await router.disconnect(state)

    app.add_api_websocket_route("/", serve_connection)
    app.add_api_websocket_route("/ws", serve_connection)
    app.add_api_websocket_route("/dashboard", serve_connection)
    app.add_api_websocket_route("/stream/{call_id}", serve_connection)

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "sessions": len(app.state.registry),
            "observers": len(app.state.hub),
        }

    @app.get("/api/calls")
    async def list_calls() -> dict:
        return {"calls": app.state.registry.active_summaries()}

    @app.post("/api/calls/{call_id}", status_code=201)
    async def preregister_call(call_id: str) -> dict:
        """Call-setup hook: reserve the session so the stream naming this call ID claims it."""
        try:
            session = app.state.registry.preregister(call_id)
        except DuplicateSessionError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return session.summary()

    return app


app = create_app()
