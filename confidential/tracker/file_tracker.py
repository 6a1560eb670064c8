import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from confidential.crypto.hashing import DEFAULT_MAX_SIZE, gzip_compress, gzip_decompress
from confidential.errors import ConfidentialError, TrackerConflict, TrackerCorrupted
from confidential.security.cancellation import CancellationToken, check
from confidential.tracker.base import UseRecord, UseTracker, first_use, tracker_key

logger = logging.getLogger(__name__)


class LocalFileTracker(UseTracker):
    """
    Gzipped JSON file `{sha256(uuid): {count, first_seen, last_seen}}`.

    Writes go through a temp file, fsync and os.replace under a process lock
    and an fcntl lock file, so a crash leaves either the old or the new store.
    Meant for a single operator; parallel runs on shared storage need the
    remote table tracker.
    """

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, UseRecord] = {}
        # Highest count this process has observed per key; a store going
        # backwards is corruption, not a reset
        self._high_water: Dict[str, int] = {}

    def open(self) -> "LocalFileTracker":
        with self._lock:
            self._load()
        return self

    def _load(self):
        if not os.path.exists(self.path):
            if self._high_water:
                raise TrackerCorrupted(f"tracker file {self.path} disappeared")
            self._records = {}
            return

        try:
            with open(self.path, 'rb') as f:
                raw = f.read()
            doc = json.loads(gzip_decompress(raw, DEFAULT_MAX_SIZE).decode('utf-8'))
        except (OSError, ValueError, ConfidentialError) as e:
            raise TrackerCorrupted(f"tracker file {self.path} is unreadable: {e}")
        if not isinstance(doc, dict):
            raise TrackerCorrupted(f"tracker file {self.path} is not a mapping")

        records = {key: UseRecord.from_json(value) for key, value in doc.items()}
        for key, seen in self._high_water.items():
            rec = records.get(key)
            if rec is None or rec.count < seen:
                raise TrackerCorrupted(f"tracker file {self.path} lost a use record")
        self._records = records
        for key, rec in records.items():
            self._high_water[key] = rec.count

    def _write(self):
        doc = {key: rec.to_json() for key, rec in sorted(self._records.items())}
        data = gzip_compress(json.dumps(doc, separators=(',', ':')).encode('utf-8'))

        directory = os.path.dirname(os.path.abspath(self.path))
        fd, temp_path = tempfile.mkstemp(prefix='.tracker-', suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    @contextmanager
    def _exclusive(self):
        with self._lock:
            lock_path = self.path + '.lock'
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def count(self, uuid: str, cancellation: Optional[CancellationToken] = None) -> int:
        check(cancellation)
        with self._lock:
            self._load()
            rec = self._records.get(tracker_key(uuid))
        check(cancellation)
        return rec.count if rec else 0

    def record(self, uuid: str, observed_count: int,
               cancellation: Optional[CancellationToken] = None) -> UseRecord:
        check(cancellation)
        key = tracker_key(uuid)
        with self._exclusive():
            self._load()
            rec = self._records.get(key)
            current = rec.count if rec else 0
            if current != observed_count:
                raise TrackerConflict(key, observed_count, current)

            now = self.clock()
            rec = rec.next_use(now) if rec else first_use(now)
            self._records[key] = rec
            try:
                self._write()
            except OSError:
                # Nothing was replaced; drop the uncommitted record
                self._load()
                raise
            self._high_water[key] = rec.count

        logger.info("Use recorded", extra={'tracker_key': key, 'count': rec.count})
        return rec
