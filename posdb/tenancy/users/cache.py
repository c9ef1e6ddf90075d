"""
Directory cache: email/username -> tenant id.

Speeds up the login lookup "which tenant owns this user" by remembering
where each email and username was last found. It is advisory only:
losing every entry changes lookup cost, never results.

Invariants:
    - Keys are normalized (trimmed, lowercased) on every call
    - Expired entries are treated as absent and dropped when touched
    - A None or empty tenant id is never cached
    - With max_entries > 0, the oldest entry is dropped to make room
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


def normalize_key(value: str) -> str:
    return value.strip().lower()


@dataclass
class _Entry:
    tenant_id: str
    timestamp: float


class DirectoryCache:
    """TTL map from normalized email/username to tenant id.

    Thread safety:
        All methods take an internal lock.

    Example:
        >>> cache = DirectoryCache(ttl_seconds=3600)
        >>> cache.put("Bob@X.com", "acme")
        >>> cache.get("bob@x.com")
        'acme'
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Entry lifetime
            max_entries: Size bound, 0 for unbounded
            clock: Time source in seconds, replaceable in tests
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._expired = 0

    def get(self, key: str) -> Optional[str]:
        """Tenant id for key, or None if absent or expired."""
        if not key:
            return None
        key = normalize_key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() - entry.timestamp > self.ttl_seconds:
                del self._entries[key]
                self._expired += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.tenant_id

    def put(self, key: str, tenant_id: Optional[str]) -> None:
        """Map key to tenant_id, replacing any existing entry."""
        if not key or not tenant_id:
            return
        key = normalize_key(key)
        with self._lock:
            self._entries.pop(key, None)
            if self.max_entries and len(self._entries) >= self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = _Entry(tenant_id=tenant_id.strip().lower(), timestamp=self._clock())

    def invalidate(self, key: Optional[str]) -> None:
        if not key:
            return
        with self._lock:
            self._entries.pop(normalize_key(key), None)

    def invalidate_user(self, email: Optional[str] = None, username: Optional[str] = None) -> None:
        """Drop the entries for a user's email and username."""
        self.invalidate(email)
        self.invalidate(username)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "expired": self._expired,
                "ttl_seconds": self.ttl_seconds,
            }
