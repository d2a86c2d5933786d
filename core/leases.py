"""
Per-connection exclusivity.

``ConnectionLeases`` is the executor's sync lease: a non-blocking claim that
is released when the job finishes, fails, or times out.  ``KeyedLocks``
serializes work per key (token refresh) and forgets a key once no task holds
or waits on it, so idle connections cost nothing.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional


class ConnectionLeases:
    """At most one holder per connection.  Event-loop local, no awaits inside."""

    def __init__(self) -> None:
        self._held: Dict[Hashable, float] = {}

    def try_acquire(self, key: Hashable) -> bool:
        if key in self._held:
            return False
        self._held[key] = time.monotonic()
        return True

    def release(self, key: Hashable) -> None:
        self._held.pop(key, None)

    def is_held(self, key: Hashable) -> bool:
        return key in self._held

    def held_for(self, key: Hashable) -> Optional[float]:
        started = self._held.get(key)
        return None if started is None else time.monotonic() - started

    def __len__(self) -> int:
        return len(self._held)


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._refs: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Wait for and hold the lock for ``key``."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if not self._refs[key]:
                del self._refs[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
