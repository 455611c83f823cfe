"""Per-run assessment cache.

Keeps the advisory service from being asked twice about the same transaction
within one processing run. ``FraudScorer.assess_batch`` opens a fresh cache
for every run, so nothing is shared between batches or businesses. Every
entry also expires after a TTL, and expired entries are purged on write.
The clock is injectable so tests can expire entries deterministically.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from settlement.models import utcnow

V = TypeVar("V")


class AssessmentCache(Generic[V]):
    def __init__(
        self,
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[datetime, V]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: Hashable, value: V) -> None:
        with self._lock:
            now = self._clock()
            expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
            for k in expired:
                del self._entries[k]
            self._entries[key] = (now + self.ttl, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
