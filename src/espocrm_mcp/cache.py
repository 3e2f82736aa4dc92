# EspoCRM MCP Server
# File: cache.py
# Version: v1

"""In-process store for idle-evicted entries (HTTP sessions, credential toolsets).

Design goals:
- Injectable (one store per table, never a module-level singleton).
- Every read/write/sweep goes through one asyncio.Lock.
- Entries own their activity timestamp and their cleanup (``touch``/``close``).
- Diagnostics-friendly (size/sets/evictions/expirations).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Protocol, Tuple, TypeVar

logger = logging.getLogger(__name__)


class IdleEntry(Protocol):
    last_used: float

    async def touch(self, now: float) -> None: ...

    async def close(self) -> None: ...


V = TypeVar("V", bound=IdleEntry)


@dataclass
class StoreStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0


class IdleStore(Generic[V]):
    """A keyed table whose entries expire after a period without use.

    - ``get`` refreshes the entry's activity timestamp.
    - ``sweep`` removes entries idle longer than ``idle_timeout_seconds``.
    - When ``max_entries`` is exceeded, the least recently used entry goes.
    Removed entries are closed outside the lock.
    """

    def __init__(
        self,
        idle_timeout_seconds: float = 1800,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout_seconds = float(idle_timeout_seconds)
        self.max_entries = int(max_entries)
        self.clock = clock
        self._entries: Dict[Hashable, V] = {}
        self._lock = asyncio.Lock()
        self._stats = StoreStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    async def get(self, key: Hashable) -> Optional[V]:
        """Return the entry (refreshing its timestamp) or None."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            self._stats.hits += 1
        await entry.touch(self.clock())
        return entry

    async def put(self, key: Hashable, entry: V) -> None:
        """Insert a fully built entry, evicting the oldest beyond capacity."""
        evicted: List[Tuple[Hashable, V]] = []
        async with self._lock:
            self._entries[key] = entry
            self._stats.sets += 1
            while self.max_entries > 0 and len(self._entries) > self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].last_used)
                evicted.append((oldest, self._entries.pop(oldest)))
                self._stats.evictions += 1

        for old_key, old_entry in evicted:
            logger.info("Evicted %s: store is at capacity (%d)", old_key, self.max_entries)
            await old_entry.close()

    async def pop(self, key: Hashable) -> Optional[V]:
        """Remove and close an entry; returns it, or None when unknown."""
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is not None:
            await entry.close()
        return entry

    async def sweep(self) -> List[Hashable]:
        """Remove and close idle entries; returns the removed keys."""
        now = self.clock()
        async with self._lock:
            expired = [
                (k, e)
                for k, e in self._entries.items()
                if now - e.last_used > self.idle_timeout_seconds
            ]
            for key, _ in expired:
                del self._entries[key]
            self._stats.expirations += len(expired)

        for key, entry in expired:
            logger.info("Cleaning up idle entry: %s", key)
            await entry.close()
        return [k for k, _ in expired]

    async def values(self) -> List[V]:
        async with self._lock:
            return list(self._entries.values())

    async def clear(self) -> None:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await entry.close()

    def stats(self) -> Dict[str, Any]:
        return {
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "max_entries": self.max_entries,
            "size": len(self._entries),
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "sets": self._stats.sets,
            "evictions": self._stats.evictions,
            "expirations": self._stats.expirations,
        }
