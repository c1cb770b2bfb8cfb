"""Thread-safe in-memory LRU cache with a byte-size ceiling and entry TTL.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** via ``json.dumps`` byte length of each value.
• **Per-entry expiry** (``ttl_seconds``) so a read-through cache over
  clinic configuration never serves a subscription status older than
  the TTL.  ``ttl_seconds=0`` disables caching entirely.
• **threading.Lock** for thread safety: webhook workers and cron fan-out
  threads read the same cache concurrently.
• **Prefix-based invalidation** so one write can clear every key of a
  clinic (e.g. ``settings:c1:*``).

Usage in SubscriptionGate
─────────────────────────
>>> cache = LRUCache(max_bytes=1024 * 1024, ttl_seconds=60)
>>> cache.put("subscription:c1", "active")
>>> cache.get("subscription:c1")
'active'
>>> cache.invalidate_prefix("subscription:")
1
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Default ceiling: 5 MB
DEFAULT_MAX_BYTES = 5 * 1024 * 1024

_MISSING = object()


class LRUCache:
    """Least-Recently-Used cache bounded by total estimated byte size."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_bytes = max_bytes
        self._ttl = ttl_seconds
        self._clock = clock
        self._current_bytes = 0
        # key → (value, estimated_size_bytes, expires_at or None)
        self._store: OrderedDict[str, tuple[Any, int, float | None]] = OrderedDict()
        self._lock = threading.Lock()

    # ── Size estimation ──────────────────────────────────────────────

    @staticmethod
    def _estimate_bytes(value: Any) -> int:
        """Return the estimated in-memory size of *value* in bytes.

        Falls back to ``str()`` length for values ``json`` cannot encode.
        """
        try:
            return len(json.dumps(value, default=str).encode("utf-8"))
        except (TypeError, ValueError, OverflowError):
            return len(str(value).encode("utf-8"))

    # ── Core operations ──────────────────────────────────────────────

    def lookup(self, key: str, default: Any = None) -> Any:
        """Return the cached value (promoting it to MRU) or *default*.

        Unlike ``get`` this lets callers cache ``None`` itself and still
        tell a hit from a miss.
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            value, size, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._store[key]
                self._current_bytes -= size
                return default
            self._store.move_to_end(key)
            return value

    def get(self, key: str) -> Any | None:
        """Return the cached value (promoting it to MRU) or ``None``."""
        return self.lookup(key)

    def contains(self, key: str) -> bool:
        """True if *key* holds a live (non-expired) entry."""
        return self.lookup(key, _MISSING) is not _MISSING

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*.  Evicts LRU entries if needed."""
        if self._ttl is not None and self._ttl <= 0:
            return

        size = self._estimate_bytes(value)
        if size > self._max_bytes:
            logger.debug(
                "Cache: skipping key %s (size %d > max %d)",
                key, size, self._max_bytes,
            )
            return

        expires_at = self._clock() + self._ttl if self._ttl is not None else None

        with self._lock:
            if key in self._store:
                _, old_size, _ = self._store.pop(key)
                self._current_bytes -= old_size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_key, (_, evicted_size, _) = self._store.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.debug("Cache: evicted %s (%d bytes)", evicted_key, evicted_size)

            self._store[key] = (value, size, expires_at)
            self._current_bytes += size

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        with self._lock:
            if key in self._store:
                _, size, _ = self._store.pop(key)
                self._current_bytes -= size
                return True
            return False

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key that starts with *prefix*.  Returns count removed."""
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for key in keys:
                _, size, _ = self._store.pop(key)
                self._current_bytes -= size
            return len(keys)

    def clear(self) -> None:
        """Drop all entries."""
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        """Total estimated bytes currently stored."""
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        """Number of entries currently stored (expired ones included until read)."""
        return len(self._store)
