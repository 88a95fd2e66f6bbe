"""In-memory photo cache with a TTL and a byte-size ceiling.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction once the byte ceiling is hit.
• **TTL per entry** (default 30 minutes).  Expired entries are purged
  opportunistically on every insert and skipped on read.
• **Injected clock** so tests can advance time without sleeping.
• No lock: the server runs one asyncio event loop, so all access is
  single-threaded.
• Purely ephemeral and per-process.  A second instance behind a load
  balancer will not see photos cached here; swap in an external cache
  behind the same ``get`` / ``put`` / ``invalidate`` interface if the
  deployment grows past one instance.

Usage
─────
>>> cache = PhotoCache(ttl_seconds=1800)
>>> cache.put("thread_abc", CachedPhoto(data=b"...", mime_type="image/jpeg"))
>>> cache.get("thread_abc").mime_type
'image/jpeg'
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60
# Default ceiling: 50 MB
DEFAULT_MAX_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class CachedPhoto:
    data: bytes
    mime_type: str
    file_name: str = "photo.jpg"

    @property
    def size(self) -> int:
        return len(self.data)


class PhotoCache:
    """Most recent photo per thread, expiring after ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_bytes = max_bytes
        self._clock = clock
        self._current_bytes = 0
        # key → (photo, expires_at)
        self._store: OrderedDict[str, tuple[CachedPhoto, float]] = OrderedDict()

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> CachedPhoto | None:
        """Return the live photo for *key* or ``None``."""
        entry = self._store.get(key)
        if entry is None:
            return None
        photo, expires_at = entry
        if expires_at <= self._clock():
            self._drop(key)
            return None
        self._store.move_to_end(key)
        return photo

    def put(self, key: str, photo: CachedPhoto) -> None:
        """Insert or replace the photo for *key*."""
        self.purge_expired()

        if photo.size > self._max_bytes:
            logger.debug(
                "PhotoCache: skipping key %s (size %d > max %d)",
                key, photo.size, self._max_bytes,
            )
            return

        if key in self._store:
            self._drop(key)

        while self._current_bytes + photo.size > self._max_bytes and self._store:
            evicted_key, (evicted, _) = self._store.popitem(last=False)
            self._current_bytes -= evicted.size
            logger.debug("PhotoCache: evicted %s (%d bytes)", evicted_key, evicted.size)

        self._store[key] = (photo, self._clock() + self._ttl)
        self._current_bytes += photo.size

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        if key not in self._store:
            return False
        self._drop(key)
        return True

    def purge_expired(self) -> int:
        """Drop every expired entry.  Returns count removed."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._store.items() if expires_at <= now]
        for key in expired:
            self._drop(key)
        if expired:
            logger.debug("PhotoCache: purged %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._store.clear()
        self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def _drop(self, key: str) -> None:
        photo, _ = self._store.pop(key)
        self._current_bytes -= photo.size
