import logging
import time
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from confidential.errors import TrackerConflict, TrackerCorrupted, TrackerError
from confidential.security.cancellation import CancellationToken, check
from confidential.tracker.base import UseRecord, UseTracker, tracker_key

logger = logging.getLogger(__name__)

PARTITION_ATTR = 'partition'
KEY_ATTR = 'uuid_hash'

_RETRYABLE_CODES = {
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'TransactionConflictException',
    'RequestLimitExceeded',
}


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', '')


class DynamoTableTracker(UseTracker):
    """Remote tracker: one DynamoDB item per (partition, sha256(uuid)).

    `record` is a conditional UpdateItem, so concurrent consumers across the
    fleet serialise on the table. Expects AWS credentials available in
    environment, instance role or the named profile.
    """

    def __init__(self, table: str, partition: str, profile_name: Optional[str] = None,
                 region_name: Optional[str] = None, client=None, clock: Callable[[], float] = time.time):
        self.table = table
        self.partition = partition
        self.clock = clock
        if client is None:
            session = boto3.Session(profile_name=profile_name, region_name=region_name)
            client = session.client('dynamodb')
        self.client = client

    def _key(self, uuid: str):
        return {
            PARTITION_ATTR: {'S': self.partition},
            KEY_ATTR: {'S': tracker_key(uuid)},
        }

    def _call(self, fn, **kwargs):
        """Invoke a client method, retrying once on throttling or contention."""
        for attempt in (1, 2):
            try:
                return fn(**kwargs)
            except ClientError as e:
                if attempt == 1 and _error_code(e) in _RETRYABLE_CODES:
                    logger.warning("Tracker table contention, retrying once",
                                   extra={'table': self.table, 'code': _error_code(e)})
                    continue
                raise

    def count(self, uuid: str, cancellation: Optional[CancellationToken] = None) -> int:
        check(cancellation)
        try:
            resp = self._call(self.client.get_item, TableName=self.table,
                              Key=self._key(uuid), ConsistentRead=True)
        except (BotoCoreError, ClientError) as e:
            raise TrackerError(f"cannot read use record: {e}")
        check(cancellation)

        item = resp.get('Item')
        if not item:
            return 0
        try:
            return int(item['count']['N'])
        except (KeyError, ValueError):
            raise TrackerCorrupted("use record item is damaged")

    def record(self, uuid: str, observed_count: int,
               cancellation: Optional[CancellationToken] = None) -> UseRecord:
        check(cancellation)
        now = str(self.clock())
        values = {':one': {'N': '1'}, ':now': {'N': now}}
        if observed_count == 0:
            condition = 'attribute_not_exists(#c)'
        else:
            condition = '#c = :observed'
            values[':observed'] = {'N': str(observed_count)}

        try:
            resp = self._call(
                self.client.update_item,
                TableName=self.table,
                Key=self._key(uuid),
                UpdateExpression='SET #c = if_not_exists(#c, :zero) + :one, '
                                 'first_seen = if_not_exists(first_seen, :now), last_seen = :now',
                ConditionExpression=condition,
                ExpressionAttributeNames={'#c': 'count'},
                ExpressionAttributeValues={**values, ':zero': {'N': '0'}},
                ReturnValues='ALL_NEW',
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                raise TrackerConflict(tracker_key(uuid), observed_count, self.count(uuid))
            raise TrackerError(f"cannot write use record: {_error_code(e) or e}")
        except BotoCoreError as e:
            raise TrackerError(f"cannot write use record: {e}")

        attrs = resp.get('Attributes', {})
        try:
            rec = UseRecord(int(attrs['count']['N']), float(attrs['first_seen']['N']),
                            float(attrs['last_seen']['N']))
        except (KeyError, ValueError):
            raise TrackerCorrupted("use record item is damaged")
        return rec
