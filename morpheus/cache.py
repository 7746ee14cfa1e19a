"""
Memoization Cache
=================

Per-morph result cache with time-based eviction.

Every pure, memoizable morph owns exactly one MemoCache, shared by every
pipeline the morph takes part in. Keys are fingerprints of
``(morph name, input, relevant context)``; values are the morph outputs.

Staleness is checked lazily on lookup: an entry inserted at ``t`` is served
while ``now - t <= ttl`` and treated as a miss once ``now - t > ttl``.
``expire()`` can be called to drop stale entries eagerly.

Concurrent misses on the same key are not coalesced. Both callers compute the
(identical, by purity) value and the last write wins. The lock only guards the
single-key reads and writes of the underlying cachetools container.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from cachetools import LRUCache

from .metadata import ContextProjection
from .util.fingerprint import UnfingerprintableError, fingerprint


class MemoCache:
    """
    TTL cache for the outputs of a single morph.

    Features:
    - O(1) lookup and store
    - Lazy expiry of stale entries, optional eager sweep with expire()
    - Size bound (least recently used entries go first)
    - Hit/miss statistics

    Entries are stored as ``(inserted_at, value)`` pairs in a cachetools
    LRUCache, which enforces the size bound; freshness is judged here.

    Usage:
        cache = MemoCache("NormalizeLabels", ttl=60)
        key = cache.key_for(shape, context)
        hit, value = cache.lookup(key)
        if not hit:
            value = normalize(shape, context)
            cache.store(key, value)
    """

    _MISSING = object()

    def __init__(
        self,
        name: str,
        ttl: Optional[float] = None,
        maxsize: int = 1024,
        projection: Optional[ContextProjection] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            name: Name of the owning morph, part of every key
            ttl: Seconds an entry stays fresh, None for no expiry
            maxsize: Maximum number of entries
            projection: Cache-relevant part of the context (default: whole context)
            timer: Clock used for expiry
        """
        self.name = name
        self.ttl = ttl
        self.maxsize = maxsize
        self.projection = projection or ContextProjection.whole()
        self._timer = timer

        self._entries = LRUCache(maxsize=maxsize)
        self._lock = threading.RLock()

        self._stats = {
            "hits": 0,
            "misses": 0,
            "stores": 0,
            "skips": 0,
            "expired": 0,
        }

    def key_for(self, input: Any, context: Any) -> Optional[Tuple[str, str, str]]:
        """
        Build the cache key for an invocation.

        Returns None when the input or the relevant context has no structural
        fingerprint; the call then runs uncached.
        """
        try:
            return (
                self.name,
                fingerprint(input),
                fingerprint(self.projection.project(context)),
            )
        except UnfingerprintableError as e:
            logging.debug(f"Skipping cache for '{self.name}': {e}")
            with self._lock:
                self._stats["skips"] += 1
            return None

    def _is_stale(self, inserted_at: float, now: float) -> bool:
        return self.ttl is not None and now - inserted_at > self.ttl

    def lookup(self, key: Hashable) -> Tuple[bool, Any]:
        """
        Look up ``key``.

        Returns:
            (True, value) on a fresh hit, (False, None) otherwise
        """
        with self._lock:
            entry = self._entries.get(key, self._MISSING)
            if entry is not self._MISSING:
                inserted_at, value = entry
                if not self._is_stale(inserted_at, self._timer()):
                    self._stats["hits"] += 1
                    return True, value
                del self._entries[key]
                self._stats["expired"] += 1
            self._stats["misses"] += 1
            return False, None

    def store(self, key: Hashable, value: Any) -> None:
        """Insert or replace the entry for ``key``; the insertion time restarts."""
        with self._lock:
            self._stats["stores"] += 1
            self._entries[key] = (self._timer(), value)

    def expire(self) -> int:
        """
        Drop stale entries now instead of waiting for their next lookup.

        Returns:
            Number of entries removed
        """
        if self.ttl is None:
            return 0
        with self._lock:
            now = self._timer()
            stale = [
                key
                for key, (inserted_at, _) in list(self._entries.items())
                if self._is_stale(inserted_at, now)
            ]
            for key in stale:
                del self._entries[key]
            self._stats["expired"] += len(stale)
        if stale:
            logging.debug(f"Expired {len(stale)} stale entries from '{self.name}'")
        return len(stale)

    def clear(self) -> None:
        """Drop every entry; statistics are kept."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        """Whether a fresh entry exists for ``key`` (statistics untouched)."""
        with self._lock:
            entry = self._entries.get(key, self._MISSING)
            if entry is self._MISSING:
                return False
            return not self._is_stale(entry[0], self._timer())

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about cache operations."""
        with self._lock:
            stats = self._stats.copy()
            stats["size"] = len(self._entries)
            stats["ttl"] = self.ttl
            lookups = stats["hits"] + stats["misses"]
            stats["hit_rate"] = stats["hits"] / lookups if lookups > 0 else 0
            return stats

    def __repr__(self) -> str:
        return f"MemoCache({self.name!r}, ttl={self.ttl}, size={len(self)})"
