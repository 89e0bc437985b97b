"""Bounded, expiring record of session ids that were already handled."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable


class SeenCache:
    """Insertion-ordered set with a capacity cap and per-entry TTL.

    Used to suppress duplicate notifications when the host repeats an
    event for the same session. Oldest entries are evicted first.
    """

    def __init__(
        self,
        capacity: int = 1024,
        ttl_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, float] = OrderedDict()

    def _evict(self, now: float) -> None:
        while self._entries:
            key, expires_at = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[key]

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        now = self._clock()
        self._evict(now)
        expires_at = self._entries.get(key)
        return expires_at is not None and expires_at > now

    def __len__(self) -> int:
        self._evict(self._clock())
        return len(self._entries)

    def add(self, key: str) -> bool:
        """Record ``key``; return False when it was already present and fresh."""

        if key in self:
            return False
        now = self._clock()
        self._entries[key] = now + self._ttl
        self._entries.move_to_end(key)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)
        return True

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    @property
    def capacity(self) -> int:
        return self._capacity


__all__ = ["SeenCache"]
