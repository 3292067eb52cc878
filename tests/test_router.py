import asyncio
import base64
import json

import pytest

from callscribe.errors import DuplicateSessionError, MalformedFrameError
from callscribe.session_store import SessionState
from callscribe.transcription.base import JobStatus
from callscribe.websocket_manager import ConnectionMetadata, ConnectionRole, ConnectionRouter

from tests.conftest import make_settings, make_stack
from tests.fakes import FakeProvider, FakeWebSocket


def _router(provider=None, **overrides):
    settings = make_settings(**overrides)
    registry, dispatcher, hub = make_stack(provider or FakeProvider(), settings)
    return ConnectionRouter(registry, dispatcher, hub, settings)


def _media(payload=b"\x10" * 160, stream_sid="MZ9", track="inbound"):
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(payload).decode(), "track": track},
    })


def _start(call_sid="CA1", stream_sid="MZ1"):
    return json.dumps({
        "event": "start",
        "streamSid": stream_sid,
        "start": {"callSid": call_sid, "streamSid": stream_sid, "tracks": ["inbound"]},
    })


def _sent_types(ws):
    return [json.loads(m)["type"] for m in ws.sent]


@pytest.mark.parametrize(
    "metadata, role",
    [
        (ConnectionMetadata(path="/stream/CA1"), ConnectionRole.MEDIA),
        (ConnectionMetadata(path="/", query={"callSid": "CA1"}), ConnectionRole.MEDIA),
        (ConnectionMetadata(path="/ws"), ConnectionRole.OBSERVER),
        (ConnectionMetadata(path="/", query={"role": "observer"}), ConnectionRole.OBSERVER),
        (ConnectionMetadata(path="/", subprotocols=["audio.stream"]), ConnectionRole.MEDIA),
        (ConnectionMetadata(path="/", subprotocols=["dashboard"]), ConnectionRole.OBSERVER),
        (ConnectionMetadata(path="/", user_agent="TwilioMediaStreams/1.0"), ConnectionRole.MEDIA),
        (ConnectionMetadata(path="/", user_agent="Mozilla/5.0"), ConnectionRole.OBSERVER),
        (ConnectionMetadata(malformed=True), ConnectionRole.OBSERVER),
    ],
)
def test_classification(metadata, role):
    assert _router().classify(metadata) is role


def test_url_marker_beats_user_agent():
    router = _router()
    meta = ConnectionMetadata(path="/ws", user_agent="TwilioMediaStreams/1.0")
    assert router.classify(meta) is ConnectionRole.OBSERVER


def test_unreadable_metadata_is_malformed():
    assert ConnectionMetadata.from_websocket(object()).malformed


def test_select_subprotocol_echoes_known_token():
    router = _router()
    assert router.select_subprotocol(ConnectionMetadata(subprotocols=["x", "audio.stream"])) == "audio.stream"
    assert router.select_subprotocol(ConnectionMetadata(subprotocols=["x"])) is None


def test_observer_gets_welcome_and_pong():
    async def run():
        router = _router()
        ws = FakeWebSocket()
        state = await router.accept(ws, ConnectionMetadata(path="/ws"))
        await router.handle_message(state, json.dumps({"type": "ping"}))
        await router.handle_message(state, json.dumps({"type": "get_active_calls"}))
        await router.handle_message(state, "not json")
        await router.handle_message(state, json.dumps({"type": "nonsense"}))
        await router.hub.drain()
        await router.disconnect(state)
        return ws, state

    ws, state = asyncio.run(run())
    assert _sent_types(ws) == ["welcome", "pong", "active_calls"]
    assert state.role is ConnectionRole.OBSERVER


def test_observer_sending_media_is_reclassified():
    async def run():
        router = _router()
        ws = FakeWebSocket()
        state = await router.accept(ws, ConnectionMetadata(path="/"))
        assert state.role is ConnectionRole.OBSERVER
        assert len(router.hub) == 1

        await router.handle_message(state, _media())
        session = router.registry.get("stream-MZ9")
        after_first = session.chunk_buffer.pending_bytes
        await router.handle_message(state, _media())
        after_second = session.chunk_buffer.pending_bytes
        observers = len(router.hub)
        role, reclassified, call_id, recovered = state.role, state.reclassified, state.call_id, session.recovered
        await router.disconnect(state)
        return role, reclassified, call_id, recovered, observers, after_first, after_second, router

    role, reclassified, call_id, recovered, observers, first, second, router = asyncio.run(run())
    assert role is ConnectionRole.MEDIA
    assert reclassified
    assert call_id == "stream-MZ9"
    assert recovered
    assert observers == 0
    assert (first, second) == (640, 1280)
    assert len(router.registry) == 0


def test_start_event_opens_session_and_notifies_observers():
    async def run():
        router = _router(FakeProvider([[JobStatus("completed", "hello there.", 0.9)]]))
        dash = FakeWebSocket()
        obs = await router.accept(dash, ConnectionMetadata(path="/ws"))
        media = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/", user_agent="TwilioMediaStreams/1.0"))
        await router.handle_message(media, json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
        await router.handle_message(media, _start())
        state_after_start = router.registry.get("CA1").state
        for _ in range(5):
            await router.handle_message(media, _media(stream_sid="MZ1"))
        await router.handle_message(media, json.dumps({"event": "stop", "streamSid": "MZ1", "stop": {"callSid": "CA1"}}))
        await router.hub.drain()
        await router.disconnect(media)
        await router.disconnect(obs)
        return dash, state_after_start, router

    dash, state_after_start, router = asyncio.run(run())
    assert state_after_start is SessionState.ACTIVE
    assert _sent_types(dash) == ["welcome", "stream_started", "live_transcript", "stream_ended"]
    assert "CA1" not in router.registry


def test_media_frame_without_payload_or_with_bad_base64_is_skipped():
    async def run():
        router = _router()
        state = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA2"))
        await router.handle_message(state, json.dumps({"event": "media", "streamSid": "MZ2", "media": {}}))
        await router.handle_message(
            state, json.dumps({"event": "media", "streamSid": "MZ2", "media": {"payload": "!!not base64!!"}})
        )
        pending = state.pipeline.session.chunk_buffer.pending_bytes
        await router.disconnect(state)
        return pending

    assert asyncio.run(run()) == 0


def test_malformed_media_frame_raises():
    async def run():
        router = _router()
        state = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA3"))
        try:
            with pytest.raises(MalformedFrameError):
                await router.handle_message(state, "{not json")
            with pytest.raises(MalformedFrameError):
                await router.handle_message(state, "[1, 2]")
        finally:
            await router.disconnect(state)

    asyncio.run(run())


def test_duplicate_stream_rejected_without_touching_first():
    async def run():
        router = _router()
        first = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA4"))
        await router.handle_message(first, _start(call_sid="CA4"))
        await router.handle_message(first, _media(stream_sid="MZ1"))
        with pytest.raises(DuplicateSessionError):
            await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA4"))
        session = router.registry.get("CA4")
        still = (session is first.pipeline.session, session.state, session.chunk_buffer.pending_bytes)
        await router.disconnect(first)
        return still

    same, state, pending = asyncio.run(run())
    assert same
    assert state is SessionState.ACTIVE
    assert pending == 640


def test_disconnect_is_idempotent():
    async def run():
        router = _router()
        state = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA5"))
        await router.disconnect(state)
        await router.disconnect(state)
        return router

    assert len(asyncio.run(run()).registry) == 0


def test_media_frame_without_event_is_skipped():
    async def run():
        router = _router()
        state = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA6"))
        await router.handle_message(state, json.dumps({"streamSid": "MZ6"}))
        await router.handle_message(state, json.dumps({"event": "dtmf", "streamSid": "MZ6", "dtmf": {"digit": "1"}}))
        role = state.role
        await router.disconnect(state)
        return role

    assert asyncio.run(run()) is ConnectionRole.MEDIA


def test_active_calls_reply_lists_live_sessions_with_timestamp():
    async def run():
        router = _router()
        media = await router.accept(FakeWebSocket(), ConnectionMetadata(path="/stream/CA7"))
        await router.handle_message(media, _start(call_sid="CA7"))
        ws = FakeWebSocket()
        obs = await router.accept(ws, ConnectionMetadata(path="/ws"))
        await router.handle_message(obs, json.dumps({"type": "get_active_calls"}))
        await router.hub.drain()
        await router.disconnect(obs)
        await router.disconnect(media)
        return [json.loads(m) for m in ws.sent]

    reply = [e for e in asyncio.run(run()) if e["type"] == "active_calls"][0]
    assert [c["call_id"] for c in reply["data"]["calls"]] == ["CA7"]
    assert "timestamp" in reply["data"]
