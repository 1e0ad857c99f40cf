"""Per-key asyncio locks.

One lock per conversation key serializes appends, read marks and the
fan-out enqueue for that conversation, while different conversations
proceed independently. Locks are dropped once nobody holds or awaits them.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        # key -> number of holders + waiters
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
