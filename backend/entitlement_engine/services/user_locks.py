"""
Per-user critical sections for read-merge-write cycles.

Locks are created on first use and dropped once no coroutine holds or
waits on them, so the registry does not grow with the user base. This
serializes work within one process only; cross-process safety comes from
the compare-and-swap writes in ReconciliationService.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class UserLockRegistry:
    """Keyed asyncio locks with reference-counted cleanup."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._refcounts[user_id] = self._refcounts.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refcounts[user_id] -= 1
            if self._refcounts[user_id] == 0:
                del self._refcounts[user_id]
                del self._locks[user_id]

    def active_users(self) -> int:
        """Number of users with a held or awaited lock."""
        return len(self._locks)


_registry: Optional[UserLockRegistry] = None


def get_user_locks() -> UserLockRegistry:
    """Return the process-wide lock registry."""
    global _registry
    if _registry is None:
        _registry = UserLockRegistry()
    return _registry
