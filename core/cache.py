"""
Bounded TTL cache with an injected clock.

Replaces ad-hoc module level dicts (e.g. ``_user_cache``) so expiry can be
tested without sleeping.
"""

from collections import OrderedDict
from typing import Any, Generic, Hashable, Optional, Tuple, TypeVar

from core.clock import Clock, system_clock

V = TypeVar("V")


class TTLCache(Generic[V]):
    """LRU-bounded mapping whose entries expire ``ttl_seconds`` after insertion."""

    def __init__(self, ttl_seconds: float, max_entries: int = 1024, clock: Clock = system_clock):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock.monotonic() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (self._clock.monotonic() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
