import json
import os

from confidential.audit.logger import AuditLogger, EventType


def test_log_and_verify(tmp_path):
    log_path = tmp_path / "audit.log"
    audit = AuditLogger(str(log_path))
    audit.log_event(EventType.ENVELOPE_RELEASED, "consumer", {"envelope_uuid": "u1", "model": "string/v1"})
    audit.log_event(EventType.ENVELOPE_REJECTED, "consumer", {"envelope_uuid": "u2", "kind": "Expired"},
                    severity="WARNING")

    ok, errors = audit.verify_log_integrity()
    assert ok, errors
    assert (os.stat(log_path).st_mode & 0o777) == 0o600
    assert (os.stat(tmp_path / ".audit_signing_key").st_mode & 0o777) == 0o600
    assert [e["event_type"] for e in audit.events_for("u1")] == [EventType.ENVELOPE_RELEASED]
    assert audit.events_for("u2", EventType.ENVELOPE_RELEASED) == []


def test_chain_survives_reopen(tmp_path):
    log_path = str(tmp_path / "audit.log")
    AuditLogger(log_path).log_event(EventType.ENVELOPE_PRODUCED, "producer", {"envelope_uuid": "u1"})
    reopened = AuditLogger(log_path)
    reopened.log_event(EventType.ENVELOPE_RELEASED, "consumer", {"envelope_uuid": "u1"})
    assert reopened.verify_log_integrity() == (True, [])


def test_tampering_is_detected(tmp_path):
    log_path = tmp_path / "audit.log"
    audit = AuditLogger(str(log_path))
    audit.log_event(EventType.ENVELOPE_REJECTED, "consumer", {"envelope_uuid": "u1", "kind": "UsesExhausted"})
    audit.log_event(EventType.ENVELOPE_RELEASED, "consumer", {"envelope_uuid": "u2"})

    lines = log_path.read_text().splitlines()
    entry = json.loads(lines[1])
    entry["event_type"] = EventType.ENVELOPE_RELEASED
    lines[1] = json.dumps(entry)
    log_path.write_text("\n".join(lines) + "\n")

    ok, errors = audit.verify_log_integrity()
    assert not ok
    assert any("Invalid signature" in e for e in errors)


def test_removed_entry_breaks_chain(tmp_path):
    log_path = tmp_path / "audit.log"
    audit = AuditLogger(str(log_path))
    for i in range(3):
        audit.log_event(EventType.TRACKER_RECORDED, "consumer", {"envelope_uuid": f"u{i}"})

    lines = log_path.read_text().splitlines()
    del lines[2]
    log_path.write_text("\n".join(lines) + "\n")

    ok, errors = audit.verify_log_integrity()
    assert not ok
    assert any("Broken hash chain" in e for e in errors)
