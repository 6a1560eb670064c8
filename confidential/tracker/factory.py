import time
from typing import Callable, Optional

from confidential.config import ConsumerSettings
from confidential.tracker.base import UseTracker
from confidential.tracker.dynamo_tracker import DynamoTableTracker
from confidential.tracker.file_tracker import LocalFileTracker


def tracker_from_settings(settings: ConsumerSettings,
                          clock: Callable[[], float] = time.time) -> Optional[UseTracker]:
    """The configured tracker, or None when tracking is switched off."""
    settings.validate()
    if settings.local_file_tracker:
        return LocalFileTracker(settings.local_file_tracker.path, clock=clock).open()
    if settings.remote_table_tracker:
        t = settings.remote_table_tracker
        return DynamoTableTracker(
            table=t.table,
            partition=t.partition,
            profile_name=t.account or None,
            region_name=t.region,
            clock=clock,
        )
    return None
