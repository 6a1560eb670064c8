import threading
import time
from typing import Optional

from confidential.errors import Cancelled


class CancellationToken:
    """
    Cooperative cancellation handed to every suspending call (wrapping-key
    decrypter, tracker reads and writes). Deadlines travel on the same token;
    there is no internal default timeout.
    """

    def __init__(self, deadline: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = deadline
        self.reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "cancelled by caller"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.reason = "deadline exceeded"
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self):
        if self.cancelled:
            raise Cancelled(self.reason)


def check(token: Optional[CancellationToken]):
    """Raise Cancelled when the (optional) token has been tripped."""
    if token is not None:
        token.raise_if_cancelled()
