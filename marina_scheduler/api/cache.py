# marina_scheduler/api/cache.py
#
# Small explicit caches with defined keys:
# - observations keyed by (site_id, date), time-boxed
# - week task sets / week views keyed by (week_start, site_id), invalidated explicitly

import threading
import time
from typing import Callable, Dict, Hashable, Optional, Tuple

_MISSING = object()


class ExpiringCache:
    """
    Dict-like cache whose entries expire after ttl seconds (ttl=None: never).
    Thread-safe; stores None as a legitimate value.
    """

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, object]] = {}
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            expires_at, value = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return default
            return value

    def __contains__(self, key) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def set(self, key, value):
        expires_at = None if self.ttl is None else self._clock() + self.ttl
        with self._lock:
            self._entries[key] = (expires_at, value)

    def invalidate(self, key) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def invalidate_where(self, predicate: Callable[[Hashable, object], bool]) -> int:
        """Drop every entry for which predicate(key, value) is true. Returns count dropped."""
        with self._lock:
            doomed = [k for k, (_, v) in self._entries.items() if predicate(k, v)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def keys(self):
        with self._lock:
            return list(self._entries)

    def __len__(self):
        with self._lock:
            return len(self._entries)
