# /gamewatch/gamewatch/cache.py

import time
from datetime import timedelta
from threading import Lock


class ExpiringCache:
    """
    A small in-process cache whose entries go stale after a fixed TTL.

    Stale entries are evicted when they are read, so `get` never returns a value
    older than `ttl`. The clock is injectable to keep expiry testable.
    """

    def __init__(self, ttl=timedelta(hours=24), clock=time.time):
        self.ttl = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        self._clock = clock
        self._entries = {}
        self._lock = Lock()

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            inserted_at, value = entry
            if self._clock() - inserted_at >= self.ttl.total_seconds():
                del self._entries[key]
                return None
            return value

    def set(self, key, value):
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def is_fresh(self, key):
        return self.get(key) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, key):
        with self._lock:
            return key in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)
