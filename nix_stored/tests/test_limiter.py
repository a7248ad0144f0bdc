import asyncio

import pytest

from nix_stored.app.errors import TransferCancelled
from nix_stored.app.services.limiter import DEFAULT_CAPACITY, TransferLimiter


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        TransferLimiter(0)
    assert TransferLimiter().capacity == DEFAULT_CAPACITY == 32


@pytest.mark.asyncio
async def test_release_is_idempotent():
    limiter = TransferLimiter(1)
    slot = await limiter.acquire()
    assert limiter.in_use == 1

    slot.release()
    slot.release()
    assert slot.released
    assert limiter.in_use == 0

    # The single permit is still usable exactly once
    again = await limiter.acquire()
    assert limiter.in_use == 1
    again.release()


@pytest.mark.asyncio
async def test_slot_released_on_error():
    limiter = TransferLimiter(1)
    with pytest.raises(RuntimeError):
        async with limiter.slot():
            assert limiter.in_use == 1
            raise RuntimeError("transfer failed")
    assert limiter.in_use == 0


@pytest.mark.asyncio
async def test_in_use_never_exceeds_capacity():
    limiter = TransferLimiter(2)
    peak = 0

    async def transfer():
        nonlocal peak
        async with limiter.slot():
            peak = max(peak, limiter.in_use)
            await asyncio.sleep(0.01)

    await asyncio.gather(*(transfer() for _ in range(10)))
    assert peak == 2
    assert limiter.in_use == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_holds_no_permit():
    limiter = TransferLimiter(1)
    held = await limiter.acquire()

    waiter = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0.01)
    assert not waiter.done()

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert limiter.in_use == 1

    held.release()
    assert limiter.in_use == 0
    slot = await asyncio.wait_for(limiter.acquire(), timeout=1)
    slot.release()


@pytest.mark.asyncio
async def test_departed_client_holds_no_permit():
    limiter = TransferLimiter(1)
    held = await limiter.acquire()
    gone = asyncio.Event()

    waiter = asyncio.create_task(limiter.acquire(gone))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    gone.set()
    with pytest.raises(TransferCancelled):
        await waiter
    assert limiter.in_use == 1

    held.release()
    assert limiter.in_use == 0
    slot = await asyncio.wait_for(limiter.acquire(), timeout=1)
    slot.release()


@pytest.mark.asyncio
async def test_already_departed_client_gives_back_free_permit():
    limiter = TransferLimiter(1)
    gone = asyncio.Event()
    gone.set()

    with pytest.raises(TransferCancelled):
        await limiter.acquire(gone)
    assert limiter.in_use == 0

    slot = await asyncio.wait_for(limiter.acquire(), timeout=1)
    assert limiter.in_use == 1
    slot.release()


@pytest.mark.asyncio
async def test_quiet_client_gets_slot():
    limiter = TransferLimiter(1)
    slot = await limiter.acquire(asyncio.Event())
    assert limiter.in_use == 1
    slot.release()
