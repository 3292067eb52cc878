"""
BroadcastHub: fan-out of JSON events to every connected observer.

broadcast() never awaits a socket: it only enqueues on each open observer's bounded queue.
A writer task per observer drains its queue in order. A send failure marks that observer dead
(skipped from then on); it leaves the registry when its own connection closes (unregister).
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def _transport_open(websocket: Any) -> bool:
    for attr in ("client_state", "application_state"):
        state = getattr(websocket, attr, WebSocketState.CONNECTED)
        if state != WebSocketState.CONNECTED:
            return False
    return True


class ObserverConnection:
    """One dashboard client: outbound queue + writer task."""

    def __init__(self, websocket: Any, max_queue: int = 256) -> None:
        self.websocket = websocket
        self.connection_id = f"observer-{next(_ids)}"
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        self._dead = False
        self._writer: asyncio.Task[Any] = asyncio.create_task(self._write_loop())

    @property
    def is_open(self) -> bool:
        return not self._dead and _transport_open(self.websocket)

    def enqueue(self, payload: str) -> bool:
        """Queue one serialized event. False if closed or the queue is full."""
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Observer %s is not keeping up; event dropped", self.connection_id)
            return False
        return True

    async def _write_loop(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                if not self._dead:
                    await self.websocket.send_text(payload)
            except Exception as e:
                self._dead = True
                logger.debug("Send to observer %s failed: %s", self.connection_id, e)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until everything queued so far was sent (or skipped)."""
        await self._queue.join()

    def abort(self) -> None:
        """Stop accepting and sending; the writer task is cancelled."""
        self._dead = True
        self._writer.cancel()

    async def close(self) -> None:
        self.abort()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass


class BroadcastHub:
    """Process-wide observer registry. Mutated only from the event loop."""

    def __init__(self, max_queue: int = 256) -> None:
        self._observers: dict[str, ObserverConnection] = {}
        self._max_queue = max_queue

    def register(self, websocket: Any) -> ObserverConnection:
        observer = ObserverConnection(websocket, max_queue=self._max_queue)
        self._observers[observer.connection_id] = observer
        logger.info("Observer %s connected (%d total)", observer.connection_id, len(self._observers))
        return observer

    def detach(self, observer: ObserverConnection) -> None:
        """Drop an observer from the fan-out immediately, without awaiting its writer."""
        if self._observers.pop(observer.connection_id, None) is not None:
            logger.info("Observer %s disconnected (%d total)", observer.connection_id, len(self._observers))
        observer.abort()

    async def unregister(self, observer: ObserverConnection) -> None:
        self.detach(observer)
        await observer.close()

    def send(self, observer: ObserverConnection, event: dict[str, Any]) -> bool:
        """Queue an event for a single observer (pong, welcome, active_calls)."""
        return observer.enqueue(json.dumps(event))

    def broadcast(self, event: dict[str, Any]) -> int:
        """Queue event for every open observer. Returns how many accepted it."""
        payload = json.dumps(event)
        delivered = 0
        for observer in list(self._observers.values()):
            if observer.enqueue(payload):
                delivered += 1
        if event.get("type") != "live_transcript":
            logger.debug("Broadcast %s to %d/%d observers", event.get("type"), delivered, len(self._observers))
        return delivered

    async def drain(self) -> None:
        """Wait for all queued events to be handed to their sockets."""
        for observer in list(self._observers.values()):
            await observer.drain()

    async def close(self) -> None:
        for observer in list(self._observers.values()):
            await self.unregister(observer)

    def __contains__(self, observer: object) -> bool:
        return isinstance(observer, ObserverConnection) and observer.connection_id in self._observers

    def __len__(self) -> int:
        return len(self._observers)
