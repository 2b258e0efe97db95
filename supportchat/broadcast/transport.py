"""Bridge between the thread based hub and asyncio WebSocket connections."""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket

from .events import Event

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Hub connection backed by a FastAPI :class:`WebSocket`.

    ``send`` may be called from any thread; it only hands the event to the
    event loop, and :meth:`pump` (run as a task next to the receive loop)
    writes events to the socket in the order they were handed over. Once the
    pump has stopped, ``send`` raises :class:`ConnectionError` so the hub
    drops the subscriber instead of queueing for a dead socket.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop) -> None:
        self._websocket = websocket
        self._loop = loop
        self._outbox: asyncio.Queue[Event | None] = asyncio.Queue()
        self._stopped = False

    def send(self, event: Event) -> None:
        if self._stopped:
            raise ConnectionError("WebSocket pump stopped")
        if self._loop.is_closed():
            raise ConnectionError("event loop closed")
        self._loop.call_soon_threadsafe(self._outbox.put_nowait, event)

    def close(self) -> None:
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._outbox.put_nowait, None)

    async def pump(self) -> None:
        while True:
            event = await self._outbox.get()
            if event is None:
                self._stopped = True
                return
            try:
                await self._websocket.send_json(event)
            except Exception:
                logger.warning("WebSocket send failed; stopping pump", exc_info=True)
                self._stopped = True
                while not self._outbox.empty():
                    self._outbox.get_nowait()
                return
