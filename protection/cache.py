"""
Ciphertext -> plaintext cache with a TTL and a capacity bound.

Entries are kept in insertion order. Every entry shares the same TTL, so the
expired entries are always a prefix of that order and the oldest-inserted entry
is always the first one.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from protection.errors import CacheEvictionError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000


@dataclass
class CacheEntry:
    plaintext: str
    inserted_at: float


class EncryptionCache:
    """
    Bounded TTL cache owned by one EncryptionGateway.

    A lock guards the entry map so the cache can also be touched from worker
    threads. Concurrent fills of the same key are last-writer-wins.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self.ttl_seconds

    def _purge_expired_locked(self, now: float) -> int:
        removed = 0
        while self._entries:
            oldest = next(iter(self._entries.values()))
            if not self._is_expired(oldest, now):
                break
            self._entries.popitem(last=False)
            removed += 1
        return removed

    def get(self, ciphertext: str) -> Optional[str]:
        """Return the cached plaintext, or None on a miss or an expired entry."""
        with self._lock:
            self._purge_expired_locked(self._clock())
            entry = self._entries.get(ciphertext)
            return entry.plaintext if entry else None

    def put(self, ciphertext: str, plaintext: str) -> None:
        """
        Insert or refresh an entry.

        Raises:
            CacheEvictionError: If the capacity bound cannot be restored
        """
        with self._lock:
            now = self._clock()
            self._purge_expired_locked(now)
            self._entries.pop(ciphertext, None)

            while len(self._entries) >= self.max_entries:
                _, evicted = self._entries.popitem(last=False)
                if self._entries and next(iter(self._entries.values())).inserted_at < evicted.inserted_at:
                    raise CacheEvictionError("Cache insertion order is inconsistent")
                logger.debug(f"Evicted oldest cache entry ({len(self._entries)} remaining)")

            self._entries[ciphertext] = CacheEntry(plaintext=plaintext, inserted_at=now)

    def evict(self, ciphertext: str) -> bool:
        """Remove one entry. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(ciphertext, None) is not None

    def clear(self) -> int:
        """Remove all entries. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired_locked(self._clock())

    def __contains__(self, ciphertext: object) -> bool:
        with self._lock:
            self._purge_expired_locked(self._clock())
            return ciphertext in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired_locked(self._clock())
            return len(self._entries)
