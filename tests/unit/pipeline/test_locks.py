import asyncio

import pytest

from triage_bot.pipeline.locks import ChannelLocks


def test_lock_is_reused_per_channel():
    locks = ChannelLocks()
    assert locks.lock("C1") is locks.lock("C1")
    assert locks.lock("C1") is not locks.lock("C2")
    assert len(locks) == 2
    assert locks.locked("C3") is False


@pytest.mark.asyncio
async def test_same_channel_waiters_run_in_arrival_order():
    locks = ChannelLocks()
    order: list[int] = []

    async def work(i: int) -> None:
        async with locks.lock("C1"):
            await asyncio.sleep(0)
            order.append(i)

    await asyncio.gather(*(work(i) for i in range(5)))
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_other_channels_are_not_blocked():
    locks = ChannelLocks()
    release = asyncio.Event()

    async def hold() -> None:
        async with locks.lock("C1"):
            await release.wait()

    holder = asyncio.create_task(hold())
    await asyncio.sleep(0)
    assert locks.locked("C1")

    async with locks.lock("C2"):
        assert locks.locked("C2")

    release.set()
    await holder
    assert not locks.locked("C1")
