"""Time-to-live cache with an injectable clock.

Small lookups that are expensive to repeat (is the local model reachable?)
are cached on an explicit object owned by the component that needs them,
rather than in module-level globals.

Usage:
    from inbox_triage.core.cache import TTLCache

    cache: TTLCache[bool] = TTLCache(ttl_seconds=60)
    available = cache.get("ollama")
    if available is None:
        available = await check_server()
        cache.put("ollama", available)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Key/value cache whose entries expire after a fixed number of seconds.

    Attributes:
        ttl_seconds: Lifetime of each entry
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            ttl_seconds: Lifetime of each entry in seconds
            clock: Zero-argument callable returning the current time in seconds.
                Tests pass a fake clock to control expiry.
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, V]] = {}

    def get(self, key: str) -> V | None:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: V) -> None:
        """Store a value, replacing any previous entry for the key."""
        self._entries[key] = (self._clock(), value)

    def invalidate(self, key: str | None = None) -> None:
        """Drop one entry, or every entry when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
