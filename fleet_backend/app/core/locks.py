"""
Per-record locks for serializing work on a single truck or request.

Locks are keyed by strings such as "truck:12" or "request:7" and live only
while somebody holds or waits for them. Several keys are always acquired in
sorted order so two operations touching the same pair of records cannot
deadlock.

These locks only serialize work inside one worker process. Across processes
the same guarantees come from the conditional UPDATE statements in the
registry and lifecycle, and from the truck row lock a booking claim takes
before reading the truck's calendar.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


def truck_key(truck_id: int) -> str:
    return f"truck:{truck_id}"


def request_key(request_id: int) -> str:
    return f"request:{request_id}"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """Registry of asyncio locks keyed by record identity."""

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    async def _acquire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._forget(key, entry)
            raise

    def _release(self, key: str) -> None:
        entry = self._entries[key]
        entry.lock.release()
        self._forget(key, entry)

    def _forget(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """
        Hold every given key for the duration of the block.

        Usage:
            async with locks.hold(request_key(7), truck_key(3)):
                ...
        """
        ordered: List[str] = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                await self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)
