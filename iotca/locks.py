"""
Per-key mutual exclusion.

Read-modify-write sections on the registry and the challenge table lock only
the service names/ids they touch, so unrelated services never serialize.
"""

import asyncio
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Dict, Iterator, List


class KeyedLock:
    """
    Lazily created lock per key, dropped once no thread holds or waits on it.

    Keys are acquired in sorted order so holders of several keys cannot deadlock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, List] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        ordered = sorted(set(keys))
        entries = []
        with self._guard:
            for key in ordered:
                entry = self._entries.setdefault(key, [threading.Lock(), 0])
                entry[1] += 1
                entries.append((key, entry))

        acquired = []
        try:
            for _, entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._guard:
                for key, entry in entries:
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class AsyncKeyedLock:
    """
    Per-key ``asyncio.Lock`` for coroutines on one event loop.

    Used where the critical section awaits, e.g. onboarding a new service
    while an operator decides. Entries are dropped once unused, so a later
    event loop never inherits a lock bound to an earlier one.
    """

    def __init__(self):
        self._entries: Dict[str, List] = {}  # key -> [asyncio.Lock, users]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
