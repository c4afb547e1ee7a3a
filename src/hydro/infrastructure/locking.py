"""Per-key mutual exclusion for threads and for asyncio tasks.

Lock entries are reference counted and dropped once no holder or waiter
remains, so the maps only grow with the number of keys in use.
"""

import asyncio
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Iterator, Union


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self, lock: Union[threading.RLock, asyncio.Lock]):
        self.lock = lock
        self.users = 0


class KeyedLock:
    """Reentrant per-key lock for code running on threads."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry(threading.RLock())
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class AsyncKeyedLock:
    """Per-key lock for coroutines sharing one event loop. Not reentrant."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    async def acquire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry(asyncio.Lock())
        entry.users += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._drop(key, entry)
            raise

    def release(self, key: str) -> None:
        """Release a key acquired with ``acquire``, possibly from another task."""
        entry = self._entries[key]
        entry.lock.release()
        self._drop(key, entry)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def _drop(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
