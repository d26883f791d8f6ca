import asyncio
from typing import Hashable
from weakref import WeakValueDictionary


class KeyedLock:
    """One asyncio.Lock per key, created on demand.

    Locks are held weakly, so a key's lock disappears once nobody is waiting on it.
    """

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[Hashable, asyncio.Lock] = WeakValueDictionary()

    def __call__(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
