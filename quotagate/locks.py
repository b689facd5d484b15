"""Keyed mutual exclusion for coroutines sharing one event loop."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Hashable


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class KeyedLock:
    """Hand out one FIFO lock per key and forget it once nobody needs it.

    ``asyncio.Lock`` wakes waiters in acquisition order, so callers that
    enter :meth:`hold` for the same key run strictly in the order they
    arrived. Entries are reference counted (holder plus waiters) and dropped
    when the count reaches zero, which keeps the map bounded by the number of
    keys with operations in flight.
    """

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _LockEntry()
            self._entries[key] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(key) is entry:
                del self._entries[key]


__all__ = ["KeyedLock"]
