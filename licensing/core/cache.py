"""In-memory TTL cache for license decisions.

Entries are keyed by ``(tenant_id, module_key)`` and expire after a fixed TTL.
The cache has no link to the license store: mutations must purge the affected
tenant explicitly via :meth:`DecisionCache.invalidate`.
"""

import threading
import time
from collections.abc import Callable, Hashable
from typing import Any

# Default TTL in seconds
DEFAULT_TTL = 60.0


class DecisionCache:
    """Process-wide TTL cache with an injectable monotonic clock.

    Reads are plain dict lookups. Writes and purges are serialised with a lock;
    the last writer for a key wins.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, Hashable], tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str, key: Hashable) -> Any | None:
        """Return cached value if present and not expired, else None."""
        entry = self._entries.get((tenant_id, key))
        if entry is None:
            self.misses += 1
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            with self._lock:
                current = self._entries.get((tenant_id, key))
                if current is entry:
                    del self._entries[(tenant_id, key)]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def put(self, tenant_id: str, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[(tenant_id, key)] = (self._clock(), value)

    def invalidate(self, tenant_id: str, key: Hashable | None = None) -> int:
        """Drop one entry, or every entry of a tenant when ``key`` is None."""
        with self._lock:
            if key is not None:
                return 1 if self._entries.pop((tenant_id, key), None) is not None else 0
            doomed = [k for k in self._entries if k[0] == tenant_id]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            return size

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        entries = list(self._entries.values())
        valid = sum(1 for stored_at, _ in entries if now - stored_at < self.ttl)
        return {
            "total_entries": len(entries),
            "valid_entries": valid,
            "expired_entries": len(entries) - valid,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return len(self._entries)
