"""
Protection-constraint engine.

Decides whether a decrypted header may be released at a placement. The
checks run in a fixed order (temporal, use counter, match) and the use is
committed to the tracker before anything is handed to the caller.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, List, Optional

from confidential.errors import (
    Cancelled,
    ConfidentialError,
    Expired,
    ExpiredCreateWindow,
    PlacementMismatch,
    ProviderMismatch,
    TrackerError,
    TrackerReadFailed,
    TrackerRequired,
    TrackerWriteFailed,
    UsesExhausted,
    UsesNearlyExhausted,
)
from confidential.models.header import ConfidentialHeader
from confidential.policy.placement import PlacementTarget
from confidential.security.cancellation import CancellationToken, check
from confidential.tracker.base import UseRecord, UseTracker

logger = logging.getLogger(__name__)

# Fewer remaining uses than this raise a warning alongside the release
NEARLY_EXHAUSTED_MARGIN = 10


class MatchMode(str, Enum):
    NONE = "none"
    PROVIDER = "provider"
    TARGET = "target"

    @classmethod
    def parse(cls, value) -> "MatchMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"require_match must be one of none, provider, target (got {value!r})")


@dataclass
class Evaluation:
    """Outcome of a passed evaluation, carried into commit."""
    seen_count: int = 0
    warnings: List[ConfidentialError] = field(default_factory=list)


def _tracker_active(tracker: Optional[UseTracker]) -> bool:
    return tracker is not None and tracker.enabled()


class ConstraintEngine:

    def evaluate(
        self,
        header: ConfidentialHeader,
        target: Optional[PlacementTarget],
        match: MatchMode,
        provider_constraints: FrozenSet[str],
        tracker: Optional[UseTracker],
        clock: Callable[[], float],
        cancellation: Optional[CancellationToken] = None,
    ) -> Evaluation:
        """Raise the first violated constraint, or return what commit needs."""
        evaluation = self.check_usage(header, tracker, clock, cancellation)
        self.check_match(header, target, match, provider_constraints)
        return evaluation

    def check_usage(
        self,
        header: ConfidentialHeader,
        tracker: Optional[UseTracker],
        clock: Callable[[], float],
        cancellation: Optional[CancellationToken] = None,
    ) -> Evaluation:
        """Temporal limits, then the use counter."""
        now = clock()
        evaluation = Evaluation()

        # Expiry first: an expired ciphertext is dead whatever the tracker says
        if header.expiry > 0 and now > header.expiry:
            raise Expired()

        needs_count = header.num_uses > 0 or (header.create_limit > 0 and now > header.create_limit)
        if needs_count and _tracker_active(tracker):
            evaluation.seen_count = self._count(header, tracker, cancellation)

        if header.create_limit > 0 and now > header.create_limit and evaluation.seen_count == 0:
            raise ExpiredCreateWindow()

        if header.num_uses > 0:
            if not _tracker_active(tracker):
                raise TrackerRequired()
            if evaluation.seen_count >= header.num_uses:
                raise UsesExhausted()
            if header.num_uses - evaluation.seen_count < NEARLY_EXHAUSTED_MARGIN:
                evaluation.warnings.append(UsesNearlyExhausted(
                    f"{header.num_uses - evaluation.seen_count} of {header.num_uses} uses remain"))
        return evaluation

    def _count(self, header: ConfidentialHeader, tracker: UseTracker,
               cancellation: Optional[CancellationToken]) -> int:
        try:
            return tracker.count(header.uuid, cancellation)
        except Cancelled:
            raise
        except (TrackerError, OSError) as e:
            logger.error("Use tracker read failed", extra={'envelope_uuid': header.uuid})
            raise TrackerReadFailed(str(e))

    def check_match(
        self,
        header: ConfidentialHeader,
        target: Optional[PlacementTarget],
        match: MatchMode,
        provider_constraints: FrozenSet[str],
    ):
        if match == MatchMode.NONE:
            return
        # A pure data source has no unique target; fall back to provider tags
        if match == MatchMode.PROVIDER or target is None:
            if not header.provider_constraints & frozenset(provider_constraints):
                raise ProviderMismatch()
            return
        if target.canonical_uri() not in header.placement_constraints:
            raise PlacementMismatch()

    def commit(
        self,
        header: ConfidentialHeader,
        evaluation: Evaluation,
        tracker: Optional[UseTracker],
        cancellation: Optional[CancellationToken] = None,
    ) -> Optional[UseRecord]:
        """Record the use; only headers with a use limit are tracked."""
        if header.num_uses <= 0:
            return None
        if not _tracker_active(tracker):
            raise TrackerRequired()
        check(cancellation)
        try:
            return tracker.record(header.uuid, evaluation.seen_count, cancellation)
        except Cancelled:
            raise
        except (TrackerError, OSError) as e:
            logger.error("Use tracker write failed", extra={'envelope_uuid': header.uuid})
            raise TrackerWriteFailed(str(e))
