"""
Per-key asyncio locks.

Used to keep a single in-flight like toggle per (user, target) pair on this
instance. Entries are reference counted and dropped once nobody holds or
waits on them, so the table stays proportional to in-flight work.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if not self._refs[key]:
                del self._refs[key]
                del self._locks[key]
