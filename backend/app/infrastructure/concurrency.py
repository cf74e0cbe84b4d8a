"""
Per-Key Async Locks

Serializes coroutines that touch the same key (a subscription id, a user
id) while letting different keys proceed in parallel. Locks are created on
first use and dropped once nobody holds or waits on them.

This covers a single process. Across processes the repositories rely on
conditional UPDATEs (revision compare-and-swap, bounded increments).
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """Map of asyncio locks with reference counting."""

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
