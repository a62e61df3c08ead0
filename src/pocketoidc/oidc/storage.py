# TTL key-value storage for codes, grants, interactions and sessions.
# Created: 2026-10-12
#
# The core only needs "key -> value with expiry" plus a per-key lock, so an
# in-process dict or an external cache can back it interchangeably.

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol

from pocketoidc.oidc.errors import TransientInfraError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    """Protocol for TTL storage backends.

    Implement this to back the provider with Redis, memcached, etc.
    Entries past ``expires_at`` must read as absent even before they are swept.
    Backends raise TransientInfraError when they cannot serve a request right now.
    """

    async def get(self, key: str) -> Any | None:
        """Return the value stored at *key*, or None if missing or expired."""
        ...

    async def put(self, key: str, value: Any, expires_at: float) -> None:
        """Store *value* at *key* until the absolute time *expires_at*."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove *key*. Returns True if something was removed."""
        ...

    def lock(self, key: str) -> Any:
        """Async context manager serializing access to one key."""
        ...

    async def sweep(self) -> int:
        """Physically drop expired entries. Returns count removed."""
        ...


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at


class MemoryStore:
    """In-process KeyValueStore.

    Values are copied on the way in and out so callers never share state with
    the store. Locks are per key and discarded once nobody holds or waits on them.
    With *max_entries* set, a full store refuses new keys instead of growing.
    """

    def __init__(self, clock: Clock = time.time, *, max_entries: int | None = None):
        self._clock = clock
        self.max_entries = max_entries
        self._entries: dict[str, _Entry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _is_full(self) -> bool:
        return self.max_entries is not None and len(self._entries) >= self.max_entries

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return copy.deepcopy(entry.value)

    async def put(self, key: str, value: Any, expires_at: float) -> None:
        if self._is_full() and key not in self._entries:
            await self.sweep()
            if self._is_full():
                logger.error("Store is full (%d entries), refusing new key", len(self))
                raise TransientInfraError("storage capacity exhausted")
        self._entries[key] = _Entry(copy.deepcopy(value), expires_at)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Swept %d expired entries", len(expired))
        return len(expired)
