"""Short-lived key-value stores used for inbound dedup and pending duplicates.

Both stores are process-local by default. A deployment running several workers
can pass any object implementing ``TTLCache`` (for example one backed by a
shared cache server) without touching the pipeline.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

Clock = Callable[[], float]


class TTLCache(Protocol[K, V]):
    def get(self, key: K) -> V | None: ...

    def set(self, key: K, value: V, ttl: float) -> None: ...

    def delete(self, key: K) -> None: ...


class InMemoryTTLCache(Generic[K, V]):
    """Dictionary with per-entry expiry, evaluated lazily on read."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: K, value: V, ttl: float) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._entries[key] = (value, now + ttl)

    def delete(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]


class InboundDeduplicator:
    """Absorbs at-least-once delivery from the messaging transports."""

    def __init__(self, cache: TTLCache[str, bool], ttl: float) -> None:
        self._cache = cache
        self._ttl = ttl

    def seen(self, channel: str, message_id: str) -> bool:
        """Return True when the message was already processed, otherwise remember it."""
        key = f"{channel}:{message_id}"
        if self._cache.get(key):
            logger.info("Skipping already processed message %s", key)
            return True
        self._cache.set(key, True, self._ttl)
        return False
