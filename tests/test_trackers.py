import gzip
import json
import os
import threading
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from conftest import FakeClock
from confidential.config import ConsumerSettings, LocalFileTrackerSettings, RemoteTableTrackerSettings
from confidential.errors import TrackerConflict, TrackerCorrupted, TrackerError
from confidential.tracker.base import UseRecord, tracker_key
from confidential.tracker.dynamo_tracker import DynamoTableTracker
from confidential.tracker.factory import tracker_from_settings
from confidential.tracker.file_tracker import LocalFileTracker
from confidential.tracker.memory import InMemoryTracker

UUID = "6f1c2a4e-8d9b-4f3a-a1b2-c3d4e5f60718"


def _client_error(code, op='UpdateItem'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, op)


def test_tracker_key_is_sha256_of_uuid():
    assert tracker_key(UUID) != UUID
    assert len(tracker_key(UUID)) == 64


def test_memory_tracker_compare_and_set():
    tracker = InMemoryTracker(clock=FakeClock())
    assert tracker.count(UUID) == 0
    assert tracker.record(UUID, 0).count == 1
    assert tracker.record(UUID, 1).count == 2
    with pytest.raises(TrackerConflict):
        tracker.record(UUID, 1)
    assert tracker.count(UUID) == 2


def test_file_tracker_persists(tmp_path, clock):
    path = str(tmp_path / "uses.json.gz")
    tracker = LocalFileTracker(path, clock=clock).open()
    assert tracker.count(UUID) == 0
    rec = tracker.record(UUID, 0)
    assert rec == UseRecord(1, clock.now, clock.now)
    clock.advance(60)
    tracker.record(UUID, 1)

    assert (os.stat(path).st_mode & 0o777) == 0o600
    doc = json.loads(gzip.decompress((tmp_path / "uses.json.gz").read_bytes()))
    assert UUID not in json.dumps(doc)
    assert doc[tracker_key(UUID)]["count"] == 2
    assert doc[tracker_key(UUID)]["last_seen"] == clock.now

    reopened = LocalFileTracker(path).open()
    assert reopened.count(UUID) == 2


def test_file_tracker_conflict_across_instances(tmp_path):
    path = str(tmp_path / "uses.json.gz")
    a = LocalFileTracker(path).open()
    b = LocalFileTracker(path).open()
    observed_a = a.count(UUID)
    observed_b = b.count(UUID)
    a.record(UUID, observed_a)
    with pytest.raises(TrackerConflict):
        b.record(UUID, observed_b)
    assert b.count(UUID) == 1


def test_file_tracker_crash_keeps_previous_state(tmp_path):
    path = str(tmp_path / "uses.json.gz")
    tracker = LocalFileTracker(path).open()
    tracker.record(UUID, 0)

    with patch('confidential.tracker.file_tracker.os.replace', side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            tracker.record(UUID, 1)

    assert tracker.count(UUID) == 1
    assert LocalFileTracker(path).open().count(UUID) == 1
    assert [p.name for p in tmp_path.iterdir() if p.name.startswith('.tracker-')] == []


def test_file_tracker_detects_lost_records(tmp_path):
    path = str(tmp_path / "uses.json.gz")
    tracker = LocalFileTracker(path).open()
    tracker.record(UUID, 0)

    with open(path, 'wb') as f:
        f.write(gzip.compress(b"{}"))
    with pytest.raises(TrackerCorrupted):
        tracker.count(UUID)

    os.remove(path)
    with pytest.raises(TrackerCorrupted):
        tracker.count(UUID)


def test_file_tracker_rejects_garbage(tmp_path):
    path = tmp_path / "uses.json.gz"
    path.write_bytes(b"definitely not gzip")
    with pytest.raises(TrackerCorrupted):
        LocalFileTracker(str(path)).open()

    path.write_bytes(gzip.compress(b'{"k": {"count": "many"}}'))
    with pytest.raises(TrackerCorrupted):
        LocalFileTracker(str(path)).open()


def test_file_tracker_concurrent_records_allow_one_winner(tmp_path):
    path = str(tmp_path / "uses.json.gz")
    trackers = [LocalFileTracker(path).open() for _ in range(4)]
    gate = threading.Barrier(len(trackers))
    outcomes = []

    def worker(tracker):
        observed = tracker.count(UUID)
        gate.wait()
        try:
            tracker.record(UUID, observed)
            outcomes.append("ok")
        except TrackerConflict:
            outcomes.append("conflict")

    threads = [threading.Thread(target=worker, args=(t,)) for t in trackers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert LocalFileTracker(path).open().count(UUID) == 1


def test_dynamo_tracker_count():
    client = MagicMock()
    client.get_item.return_value = {'Item': {'count': {'N': '3'}}}
    tracker = DynamoTableTracker('uses', 'prod', client=client)
    assert tracker.count(UUID) == 3

    kwargs = client.get_item.call_args.kwargs
    assert kwargs['ConsistentRead'] is True
    assert kwargs['Key'] == {'partition': {'S': 'prod'}, 'uuid_hash': {'S': tracker_key(UUID)}}

    client.get_item.return_value = {}
    assert tracker.count(UUID) == 0


def test_dynamo_tracker_record_is_conditional(clock):
    client = MagicMock()
    client.update_item.return_value = {'Attributes': {
        'count': {'N': '1'}, 'first_seen': {'N': str(clock.now)}, 'last_seen': {'N': str(clock.now)}}}
    tracker = DynamoTableTracker('uses', 'prod', client=client, clock=clock)

    assert tracker.record(UUID, 0).count == 1
    kwargs = client.update_item.call_args.kwargs
    assert kwargs['ConditionExpression'] == 'attribute_not_exists(#c)'

    tracker.record(UUID, 4)
    kwargs = client.update_item.call_args.kwargs
    assert kwargs['ConditionExpression'] == '#c = :observed'
    assert kwargs['ExpressionAttributeValues'][':observed'] == {'N': '4'}


def test_dynamo_tracker_conflict():
    client = MagicMock()
    client.update_item.side_effect = _client_error('ConditionalCheckFailedException')
    client.get_item.return_value = {'Item': {'count': {'N': '5'}}}
    tracker = DynamoTableTracker('uses', 'prod', client=client)

    with pytest.raises(TrackerConflict) as exc:
        tracker.record(UUID, 4)
    assert exc.value.current == 5


def test_dynamo_tracker_retries_throttling_once():
    client = MagicMock()
    client.get_item.side_effect = [_client_error('ThrottlingException', 'GetItem'), {'Item': {'count': {'N': '1'}}}]
    tracker = DynamoTableTracker('uses', 'prod', client=client)
    assert tracker.count(UUID) == 1

    client.get_item.side_effect = _client_error('ThrottlingException', 'GetItem')
    with pytest.raises(TrackerError):
        tracker.count(UUID)
    assert client.get_item.call_count == 4


def test_dynamo_tracker_uses_profile_session():
    with patch('boto3.Session') as session:
        DynamoTableTracker('uses', 'prod', profile_name='ops', region_name='eu-west-1')
    session.assert_called_once_with(profile_name='ops', region_name='eu-west-1')
    session.return_value.client.assert_called_once_with('dynamodb')


def test_tracker_from_settings(tmp_path):
    assert tracker_from_settings(ConsumerSettings()) is None

    local = tracker_from_settings(ConsumerSettings(
        local_file_tracker=LocalFileTrackerSettings(str(tmp_path / "uses.json.gz"))))
    assert isinstance(local, LocalFileTracker)

    with patch('boto3.Session'):
        remote = tracker_from_settings(ConsumerSettings(
            remote_table_tracker=RemoteTableTrackerSettings("", "uses", "prod")))
    assert isinstance(remote, DynamoTableTracker)
