"""Per-user lock registry.

Each user id maps to its own ``asyncio.Lock``, created on first reference and
kept for the life of the process. ``asyncio.Lock`` wakes waiters in arrival
order and a newcomer cannot take the lock while others are queued, so
acquisition is first-come-first-served. Registry lookups never ``await``
between the lookup and the insert, which makes lazy creation atomic on the
event loop.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import structlog

logger = structlog.get_logger()


class LockAcquireTimeout(Exception):
    def __init__(self, user_id: int, timeout: float):
        super().__init__(f"Could not lock user {user_id} within {timeout}s")
        self.user_id = user_id
        self.timeout = timeout


class UserLockHandle:
    """Proof of ownership returned by ``UserLockRegistry.acquire``."""

    def __init__(self, user_id: int, lock: asyncio.Lock):
        self.user_id = user_id
        self._lock = lock
        self.released = False


class UserLockRegistry:
    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, user_id: int) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    async def acquire(self, user_id: int, timeout: float) -> UserLockHandle:
        """Wait up to ``timeout`` seconds for the user's lock.

        Raises ``LockAcquireTimeout`` when the wait runs out; in that case the
        caller holds nothing.
        """
        lock = self._locks[user_id]
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            logger.warning("User lock wait timed out", user_id=user_id, timeout=timeout)
            raise LockAcquireTimeout(user_id, timeout) from None
        return UserLockHandle(user_id, lock)

    def release(self, handle: UserLockHandle) -> None:
        if handle.released:
            raise RuntimeError(f"Lock for user {handle.user_id} already released")
        handle.released = True
        handle._lock.release()

    @asynccontextmanager
    async def hold(self, user_id: int, timeout: float) -> AsyncIterator[UserLockHandle]:
        handle = await self.acquire(user_id, timeout)
        try:
            yield handle
        finally:
            self.release(handle)


_lock_registry = UserLockRegistry()


def get_lock_registry() -> UserLockRegistry:
    return _lock_registry


def reset_lock_registry():
    """Drop every user lock (for testing only)."""
    global _lock_registry
    _lock_registry = UserLockRegistry()
