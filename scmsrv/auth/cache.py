"""In-process key/value stores for OAuth token material.

``TokenStore`` holds request-token secrets (with a TTL, so abandoned
flows are forgotten) and access credentials (``ttl=None``, kept until
overwritten or the process exits).  Expired entries are lazily evicted.

``pop`` is atomic: of two concurrent callers for the same key, exactly
one gets the value and the other gets ``None``.
"""

from __future__ import annotations

import time
from threading import Lock
from typing import Generic, TypeVar

V = TypeVar("V")


class TokenStore(Generic[V]):
    """Thread-safe, bounded store with optional per-entry TTL."""

    def __init__(self, ttl: float | None = None, max_size: int = 10_000) -> None:
        self._ttl = ttl
        self._max_size = max_size
        self._data: dict[str, tuple[V, float]] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------ API

    def get(self, key: str) -> V | None:
        """Return the live value for *key*, or ``None`` on miss / expiry."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if self._expired(entry[1], time.monotonic()):
                del self._data[key]
                return None
            return entry[0]

    def set(self, key: str, value: V) -> None:
        """Store *value*, replacing any previous entry for *key*."""
        with self._lock:
            if key not in self._data and len(self._data) >= self._max_size:
                self._evict_expired()
                if len(self._data) >= self._max_size:
                    # still full: drop the oldest entry
                    oldest = min(self._data, key=lambda k: self._data[k][1])
                    del self._data[oldest]
            self._data[key] = (value, time.monotonic())

    def pop(self, key: str) -> V | None:
        """Remove *key* and return its live value (single consumption)."""
        with self._lock:
            entry = self._data.pop(key, None)
            if entry is None or self._expired(entry[1], time.monotonic()):
                return None
            return entry[0]

    def delete(self, key: str) -> bool:
        """Drop *key*; return whether it was present."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    # ------------------------------------------------------------------ internal

    def _expired(self, ts: float, now: float) -> bool:
        return self._ttl is not None and now - ts > self._ttl

    def _evict_expired(self) -> None:
        if self._ttl is None:
            return
        now = time.monotonic()
        expired = [k for k, (_, ts) in self._data.items() if now - ts > self._ttl]
        for k in expired:
            del self._data[k]
