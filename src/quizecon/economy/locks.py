"""Per-user exclusive locks for read-modify-write economy operations.

In-process ``asyncio.Lock`` per user id. Multi-user operations acquire in
ascending user id order so two sabotages crossing the same pair of users
cannot deadlock. Acquisition is bounded; a timeout surfaces as
``TransientFailure``. Row locks on the wallet rows (``SELECT ... FOR UPDATE``)
cover the cross-process case on PostgreSQL.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from quizecon.economy.errors import TransientFailure

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Lazily created lock per user id.

    Entries are weak: a lock nobody holds or waits on is dropped.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def tracked_users(self) -> list[int]:
        """Ids whose lock is currently held or awaited."""
        return sorted(self._locks.keys())

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def is_locked(self, user_id: int) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *user_ids: int) -> AsyncIterator[tuple[int, ...]]:
        """Hold the locks of all given users, acquired lowest id first.

        Yields the ordered, de-duplicated ids.
        """
        ordered = tuple(sorted(set(user_ids)))
        async with AsyncExitStack() as stack:
            for user_id in ordered:
                lock = self._lock_for(user_id)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError as e:
                    logger.warning("Timed out waiting for lock on user %d", user_id)
                    raise TransientFailure(f"Timed out waiting for user {user_id}") from e
                stack.callback(lock.release)
            yield ordered
