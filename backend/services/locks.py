"""
PaySys Approvals - Workflow Locks

In-process mutual exclusion for read-modify-write cycles.

Lock order is fixed everywhere: day locks first (sorted by date), then
document locks. Single-document operations only ever take a document lock,
so they cannot deadlock against a day-level batch.

Locks are created on demand and dropped once nobody holds or waits for them.
Cross-process safety comes from the store's compare-and-swap, not from here.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, Tuple

logger = logging.getLogger(__name__)


class LockManager:
    """Keyed asyncio locks with reference counting."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def _hold(self, key: Tuple[str, str]):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def document_lock(self, collection: str, doc_id: str):
        return self._hold(("doc", f"{collection}/{doc_id}"))

    def day_lock(self, day: str):
        return self._hold(("day", day))

    @asynccontextmanager
    async def day_locks(self, days: Iterable[str]):
        """Acquire several day locks in sorted order."""
        ordered = sorted(set(days))
        if not ordered:
            yield
            return
        async with self.day_lock(ordered[0]):
            async with self.day_locks(ordered[1:]):
                yield

    def is_locked(self, kind: str, name: str) -> bool:
        lock = self._locks.get((kind, name))
        return lock is not None and lock.locked()

    @property
    def active_count(self) -> int:
        return len(self._locks)
