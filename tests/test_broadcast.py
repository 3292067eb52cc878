import asyncio
import json

from callscribe.broadcast import BroadcastHub
from callscribe.schemas.observer import make_event

from tests.fakes import FakeWebSocket


def test_broadcast_reaches_every_observer_in_order():
    async def run():
        hub = BroadcastHub()
        a, b = FakeWebSocket(), FakeWebSocket()
        hub.register(a)
        hub.register(b)
        assert hub.broadcast(make_event("stream_started", {"call_id": "call-1"})) == 2
        assert hub.broadcast(make_event("stream_ended", {"call_id": "call-1"})) == 2
        await hub.drain()
        await hub.close()
        return a, b

    a, b = asyncio.run(run())
    for ws in (a, b):
        types = [json.loads(m)["type"] for m in ws.sent]
        assert types == ["stream_started", "stream_ended"]


def test_failed_observer_does_not_block_others():
    async def run():
        hub = BroadcastHub()
        bad, good = FakeWebSocket(fail=True), FakeWebSocket()
        bad_obs = hub.register(bad)
        hub.register(good)
        hub.broadcast(make_event("live_transcript", {"text": "one."}))
        await hub.drain()
        delivered = hub.broadcast(make_event("live_transcript", {"text": "two."}))
        await hub.drain()
        alive = bad_obs.is_open
        await hub.close()
        return good, delivered, alive

    good, delivered, alive = asyncio.run(run())
    assert [json.loads(m)["data"]["text"] for m in good.sent] == ["one.", "two."]
    assert delivered == 1
    assert alive is False


def test_unregistered_observer_gets_nothing():
    async def run():
        hub = BroadcastHub()
        ws = FakeWebSocket()
        observer = hub.register(ws)
        await hub.unregister(observer)
        assert observer not in hub
        assert hub.broadcast(make_event("pong")) == 0
        return ws

    assert asyncio.run(run()).sent == []


def test_full_queue_drops_for_that_observer_only():
    async def run():
        hub = BroadcastHub(max_queue=1)
        observer = hub.register(FakeWebSocket())
        # Writer task has not run yet: first fills the queue, second overflows
        first = hub.send(observer, make_event("pong"))
        second = hub.send(observer, make_event("pong"))
        await hub.close()
        return first, second

    assert asyncio.run(run()) == (True, False)


def test_events_carry_timestamp():
    event = make_event("live_transcript", {"call_id": "call-1", "text": "hi."})
    assert event["type"] == "live_transcript"
    assert event["data"]["call_id"] == "call-1"
    assert "timestamp" in event["data"]
