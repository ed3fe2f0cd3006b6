import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


class KeyedLockRegistry:
    """
    One asyncio.Lock per key, created on first use.

    An entry counts its holders and waiters and is dropped when the last one
    leaves, so the registry only holds keys that are currently in use.
    Locks are per process; they do not coordinate separate workers.
    """

    def __init__(self):
        self._locks: Dict[Hashable, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _LockEntry()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    def holders(self, key: Hashable) -> int:
        entry = self._locks.get(key)
        return entry.holders if entry else 0

    def __len__(self) -> int:
        return len(self._locks)


def position_key(user_id: str, portfolio_id: str) -> tuple:
    return ("position", user_id, portfolio_id)


def portfolio_key(portfolio_id: str) -> tuple:
    return ("portfolio", portfolio_id)
