import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from starlette.types import Message, Receive

logger = logging.getLogger(__name__)

# Upload bytes held in memory while a request waits for a slot
MAX_BUFFERED = 1024 * 1024


class ClientWatch:
    """Notices ``http.disconnect`` while a request waits for a transfer slot.

    A client going away does not cancel the handler, it only shows up on the
    ASGI receive channel. Body messages pulled from the channel while
    watching are kept and handed out again by ``receive``, so an upload built
    on it loses nothing. Watching stops early once ``max_buffered`` body
    bytes are held.
    """

    def __init__(self, receive: Receive, max_buffered: int = MAX_BUFFERED):
        self._receive = receive
        self._max_buffered = max_buffered
        self._pending: deque = deque()
        self._buffered = 0
        self.disconnected = asyncio.Event()

    async def _listen(self) -> None:
        while self._buffered < self._max_buffered:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                self.disconnected.set()
                return
            self._pending.append(message)
            self._buffered += len(message.get("body", b""))
        logger.debug(f"Stopped watching for disconnect after {self._buffered} buffered bytes")

    async def receive(self) -> Message:
        if self._pending:
            return self._pending.popleft()
        if self.disconnected.is_set():
            return {"type": "http.disconnect"}
        return await self._receive()

    @asynccontextmanager
    async def watching(self) -> AsyncIterator[asyncio.Event]:
        """Listen in the background; yields the event set on disconnect."""
        listener = asyncio.ensure_future(self._listen())
        try:
            yield self.disconnected
        finally:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
