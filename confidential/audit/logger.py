"""
Audit trail for envelope releases and rejections.

Append-only JSON lines, each signed with Ed25519 and chained to the previous
entry by SHA-256, so an operator can prove which ciphertexts were released
where and when. Entries carry envelope UUIDs, models and error kinds; never
plaintext, keys or constraint values.
"""

import hashlib
import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

GENESIS_HASH = "0" * 64


class EventType:
    """Audit event types"""
    ENVELOPE_RELEASED = "envelope.released"
    ENVELOPE_REJECTED = "envelope.rejected"
    TRACKER_RECORDED = "tracker.recorded"
    ENVELOPE_PRODUCED = "envelope.produced"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AuditLogger:
    """
    Signed, hash-chained audit log.

    Safe to share between consumer threads; appends are serialised.
    """

    def __init__(self, log_path: str, signing_key_path: Optional[str] = None):
        self.log_path = log_path
        self.signing_key_path = signing_key_path or os.path.join(
            os.path.dirname(os.path.abspath(log_path)),
            '.audit_signing_key'
        )
        self._lock = threading.Lock()
        self.signing_key = self._load_or_generate_signing_key()

        if not os.path.exists(log_path):
            self._initialize_log_file()
        self.last_hash = self._get_last_entry_hash()

    def _load_or_generate_signing_key(self) -> ed25519.Ed25519PrivateKey:
        if os.path.exists(self.signing_key_path):
            with open(self.signing_key_path, 'rb') as f:
                return serialization.load_pem_private_key(f.read(), password=None)

        private_key = ed25519.Ed25519PrivateKey.generate()
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        with open(self.signing_key_path, 'wb') as f:
            f.write(pem)
        os.chmod(self.signing_key_path, 0o600)
        return private_key

    def _public_key_hex(self) -> str:
        return self.signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        ).hex()

    def _initialize_log_file(self):
        header = {
            "version": "1.0",
            "created_at": _now(),
            "public_key": self._public_key_hex(),
            "description": "Confidential envelope audit log"
        }
        with open(self.log_path, 'w') as f:
            f.write("# " + json.dumps(header) + "\n")
        os.chmod(self.log_path, 0o600)

    def _entries(self):
        with open(self.log_path, 'r') as f:
            for idx, line in enumerate(f):
                if line.startswith('#') or not line.strip():
                    continue
                yield idx, line

    def _get_last_entry_hash(self) -> str:
        last = GENESIS_HASH
        for _, line in self._entries():
            try:
                last = json.loads(line).get('entry_hash', last)
            except json.JSONDecodeError:
                continue
        return last

    def log_event(self, event_type: str, actor: str, details: Dict[str, Any], severity: str = "INFO"):
        """
        Append a signed entry.

        Args:
            event_type: one of EventType
            actor: component or operator responsible (e.g. "consumer")
            details: envelope_uuid, model, kind, ... (never secret material)
            severity: INFO, WARNING or ERROR
        """
        with self._lock:
            entry = {
                "timestamp": _now(),
                "event_type": event_type,
                "actor": actor,
                "severity": severity,
                "details": details,
                "previous_hash": self.last_hash
            }
            entry_json = json.dumps(entry, sort_keys=True)
            entry["entry_hash"] = hashlib.sha256(entry_json.encode()).hexdigest()
            entry["signature"] = self.signing_key.sign(entry_json.encode()).hex()

            with open(self.log_path, 'a') as f:
                f.write(json.dumps(entry) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self.last_hash = entry["entry_hash"]

    def verify_log_integrity(self) -> Tuple[bool, List[str]]:
        """Check the header key, every signature and the hash chain."""
        if not os.path.exists(self.log_path):
            return False, ["Log file does not exist"]

        with open(self.log_path, 'r') as f:
            header_line = f.readline()
        if not header_line.startswith('#'):
            return False, ["Invalid log header"]
        try:
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(
                bytes.fromhex(json.loads(header_line[1:].strip())['public_key']))
        except (ValueError, KeyError):
            return False, ["Missing or invalid public key in header"]

        errors = []
        previous_hash = GENESIS_HASH
        for idx, line in self._entries():
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                errors.append(f"Line {idx}: Invalid JSON")
                continue

            if entry.get('previous_hash') != previous_hash:
                errors.append(f"Line {idx}: Broken hash chain")

            body = {k: v for k, v in entry.items() if k not in ('signature', 'entry_hash')}
            entry_json = json.dumps(body, sort_keys=True).encode()
            try:
                public_key.verify(bytes.fromhex(entry.get('signature', '')), entry_json)
            except (InvalidSignature, ValueError):
                errors.append(f"Line {idx}: Invalid signature")

            if hashlib.sha256(entry_json).hexdigest() != entry.get('entry_hash'):
                errors.append(f"Line {idx}: Hash mismatch")
            previous_hash = entry.get('entry_hash', GENESIS_HASH)

        return len(errors) == 0, errors

    def events_for(self, envelope_uuid: str, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        results = []
        for _, line in self._entries():
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry.get('details', {}).get('envelope_uuid') != envelope_uuid:
                continue
            if event_type and entry.get('event_type') != event_type:
                continue
            results.append(entry)
        return results
