"""
Keyed mutual exclusion.

One asyncio.Lock per key, created on first use and kept forever. The
number of keys is bounded by the number of distinct branches ever
deployed, so entries are never evicted. Lookup and insertion happen
without an await in between, so two coroutines racing for a new key
always end up sharing the same lock.

Waiters on one key are woken in FIFO order. Different keys never block
each other.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Hashable, TypeVar

from deployd.errors import LockTimeout


T = TypeVar("T")

# hold() and with_lock() without a timeout argument use the manager's
_DEFAULT = object()


class LockManager:
    def __init__(self, timeout: float | None = None):
        self.timeout = timeout   # None: wait forever
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout=_DEFAULT):
        """Hold the lock for key for the duration of the block.

        timeout=None waits forever, even if the manager has a timeout.
        """
        lock = self._lock_for(key)
        if timeout is _DEFAULT:
            timeout = self.timeout
        if timeout is None:
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise LockTimeout(
                    f"timed out after {timeout}s waiting for lock {key}"
                ) from None
        try:
            yield
        finally:
            lock.release()

    async def with_lock(self, key: Hashable, body: Callable[[], Awaitable[T]],
                        timeout=_DEFAULT) -> T:
        """Run body() while holding key's lock and return its result."""
        async with self.hold(key, timeout):
            return await body()
