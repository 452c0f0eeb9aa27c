"""
Per-Key Lock Registry

Mutual exclusion scoped to one entity id (checkout session, delegated
token). Locks are created on demand and dropped once nobody holds or
waits on them, so the registry does not grow with every id ever seen.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """
    asyncio locks keyed by string id.

    Usage:
        async with locks.hold(session_id):
            ...read, modify, write...
    """

    def __init__(self, name: str = "locks"):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        # Guards the two dicts above; never held while awaiting a key lock
        self._registry_lock = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            async with self._registry_lock:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
