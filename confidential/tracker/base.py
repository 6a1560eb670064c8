from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from confidential.crypto.hashing import sha256_hex
from confidential.errors import TrackerCorrupted
from confidential.security.cancellation import CancellationToken


def tracker_key(uuid: str) -> str:
    """Stores never see the raw envelope UUID."""
    return sha256_hex(uuid)


@dataclass(frozen=True)
class UseRecord:
    count: int
    first_seen: float
    last_seen: float

    def to_json(self) -> Dict[str, Any]:
        return {"count": self.count, "first_seen": self.first_seen, "last_seen": self.last_seen}

    @classmethod
    def from_json(cls, data: Any) -> "UseRecord":
        try:
            rec = cls(int(data["count"]), float(data["first_seen"]), float(data["last_seen"]))
        except (KeyError, TypeError, ValueError):
            raise TrackerCorrupted("use record is damaged")
        if rec.count < 0:
            raise TrackerCorrupted("use record holds a negative count")
        return rec

    def next_use(self, now: float) -> "UseRecord":
        return UseRecord(self.count + 1, self.first_seen, now)


def first_use(now: float) -> UseRecord:
    return UseRecord(1, now, now)


class UseTracker(ABC):
    """
    Counts releases per envelope UUID.

    `record` is compare-and-set: it commits `observed_count + 1` only if the
    stored count still equals `observed_count`, otherwise it raises
    TrackerConflict. Either the new record is durable or nothing changed.
    """

    @abstractmethod
    def count(self, uuid: str, cancellation: Optional[CancellationToken] = None) -> int:
        pass

    @abstractmethod
    def record(self, uuid: str, observed_count: int,
               cancellation: Optional[CancellationToken] = None) -> UseRecord:
        pass

    def enabled(self) -> bool:
        return True
