import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from nix_stored.app.errors import TransferCancelled

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 32


async def _settle(task: asyncio.Future) -> bool:
    """Cancel ``task`` and report whether it had already finished normally."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        return False
    return True


class Slot:
    """A permit held for the duration of one file transfer."""

    def __init__(self, limiter: "TransferLimiter"):
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Return the permit. Only the first call has an effect."""
        if self._released:
            return
        self._released = True
        self._limiter._give_back()


class TransferLimiter:
    """Bounds concurrent data-path file I/O across all requests.

    Existence checks are metadata-only and do not go through the limiter.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("Limiter capacity must be positive")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_use = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    async def acquire(self, cancelled: Optional[asyncio.Event] = None) -> Slot:
        """Wait for a free permit.

        Acquisition fails without holding a permit when the waiting task is
        cancelled (``asyncio.CancelledError`` propagates) or when the
        ``cancelled`` event fires first (``TransferCancelled``).
        """
        waiter = asyncio.ensure_future(self._semaphore.acquire())
        watcher = asyncio.ensure_future(cancelled.wait()) if cancelled is not None else None
        pending = {waiter} if watcher is None else {waiter, watcher}
        try:
            await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if watcher is not None:
                await _settle(watcher)
            if await _settle(waiter):
                self._semaphore.release()
            logger.warning("Transfer cancelled while waiting for a slot")
            raise

        if watcher is not None:
            await _settle(watcher)
            if cancelled.is_set():
                if await _settle(waiter):
                    self._semaphore.release()
                logger.warning("Client went away while waiting for a slot")
                raise TransferCancelled("Client disconnected before a transfer slot was free")

        self._in_use += 1
        logger.debug(f"Slot acquired ({self._in_use}/{self._capacity} in use)")
        return Slot(self)

    @asynccontextmanager
    async def slot(self, cancelled: Optional[asyncio.Event] = None) -> AsyncIterator[Slot]:
        held = await self.acquire(cancelled)
        try:
            yield held
        finally:
            held.release()

    def _give_back(self) -> None:
        self._in_use -= 1
        self._semaphore.release()
        logger.debug(f"Slot released ({self._in_use}/{self._capacity} in use)")
