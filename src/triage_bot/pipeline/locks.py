from __future__ import annotations

import asyncio


class ChannelLocks:
    """One ``asyncio.Lock`` per channel, created on first use and kept.

    Waiters on a channel are woken in arrival order, so same-channel events
    are processed FIFO while other channels proceed independently.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    def locked(self, channel_id: str) -> bool:
        lock = self._locks.get(channel_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
