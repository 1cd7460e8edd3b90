"""
Short-lived read-through cache for upstream market data.

Values are deep-copied on the way in and on the way out, so a caller
mutating what it received can never corrupt the cached entry.
"""
import copy
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from .locks import ReadWriteLock

T = TypeVar("T")


@dataclass
class _CacheEntry:
    expires_at: float
    value: Any


class TTLCache(Generic[T]):

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = ReadWriteLock()
        self._data: Dict[str, _CacheEntry] = {}

    def get(self, key: str) -> Tuple[Optional[T], bool]:
        """Return (copy_of_value, hit)."""
        with self._lock.read_locked():
            entry = self._data.get(key)
        if entry is None or self._clock() >= entry.expires_at:
            return None, False
        return copy.deepcopy(entry.value), True

    def set(self, key: str, value: T):
        entry = _CacheEntry(expires_at=self._clock() + self.ttl_seconds, value=copy.deepcopy(value))
        with self._lock.write_locked():
            self._data[key] = entry

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock.write_locked():
            expired = [k for k, e in self._data.items() if now >= e.expires_at]
            for k in expired:
                del self._data[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._data)
