"""
Per-key async locks.

In-memory analogue of SELECT FOR UPDATE: mutations of one escrow or one
token are serialised, mutations of different keys run concurrently.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """
    Pool of asyncio locks keyed by entity id.

    Entries are dropped once no coroutine holds or waits on them, so the
    pool does not grow with the number of entities ever touched.

    Usage:
        locks = KeyedLocks()
        async with locks.hold(escrow_id):
            ...  # read-check-write on that escrow
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Acquire the lock for key for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
