import threading
import time
from typing import Callable, Dict, Optional

from confidential.errors import TrackerConflict
from confidential.security.cancellation import CancellationToken, check
from confidential.tracker.base import UseRecord, UseTracker, first_use, tracker_key


class InMemoryTracker(UseTracker):
    """Process-local tracker for tests and single-process pipelines."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._records: Dict[str, UseRecord] = {}
        self._lock = threading.Lock()

    def count(self, uuid: str, cancellation: Optional[CancellationToken] = None) -> int:
        check(cancellation)
        with self._lock:
            rec = self._records.get(tracker_key(uuid))
        return rec.count if rec else 0

    def record(self, uuid: str, observed_count: int,
               cancellation: Optional[CancellationToken] = None) -> UseRecord:
        check(cancellation)
        key = tracker_key(uuid)
        with self._lock:
            rec = self._records.get(key)
            current = rec.count if rec else 0
            if current != observed_count:
                raise TrackerConflict(key, observed_count, current)
            now = self.clock()
            rec = rec.next_use(now) if rec else first_use(now)
            self._records[key] = rec
        return rec

    def get(self, uuid: str) -> Optional[UseRecord]:
        with self._lock:
            return self._records.get(tracker_key(uuid))
