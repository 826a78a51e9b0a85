import asyncio
from typing import Dict, Hashable


class KeyedLocks:
    """Lazily created ``asyncio.Lock`` per key.

    Locks are never evicted; the key space (workspace/agent pairs) is small
    and bounded by what exists on disk.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
