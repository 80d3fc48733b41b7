"""Keyed mutual exclusion for shared-parent mutations.

One ``asyncio.Lock`` per key, created on first use and kept for the life
of the registry. Keys are shared-parent resource IDs, so the registry
only grows with the number of distinct parents touched by the process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from reconciler.observability.metrics import NAMED_MUTEX_WAIT_SECONDS

logger = logging.getLogger(__name__)


class NamedMutex:
    """Registry of independent locks addressed by string key.

    Pass one instance to every orchestrator that may touch the same
    parents; separate instances do not exclude each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        # No await between lookup and insert, so this is atomic per loop.
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def acquire(self, key: str) -> None:
        lock = self._lock_for(key)
        started = time.monotonic()
        if lock.locked():
            logger.debug(
                'Waiting for lock on %s',
                key,
                extra={'lock_key': key},
            )
        await lock.acquire()
        NAMED_MUTEX_WAIT_SECONDS.observe(time.monotonic() - started)

    def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None:
            raise RuntimeError(f'lock {key!r} was never acquired')
        lock.release()

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)
