import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from conftest import HINT
from confidential.audit.logger import AuditLogger, EventType
from confidential.crypto import jwk as jwk_lib
from confidential.crypto.envelope import consume
from confidential.errors import InvalidProtection
from confidential.helpers.certificate import CertificateHelper
from confidential.helpers.strings import ContentHelper
from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.models.header import ProtectionParams
from confidential.models.payloads import PEM_FORMAT, CertificateData, StringData
from confidential.models.record import decode_record
from confidential.producer import ConfidentialProducer, encrypt


def _open_record(armored, wrapping_key):
    parsed = consume(armored, wrapping_key)
    return parsed.hint, decode_record(parsed.record.to_bytes())


def test_encrypt_module_function(wrapping_key):
    armored = encrypt(StringData("pw"), ProtectionParams(num_uses=1), HINT, wrapping_key.public_key())
    hint, (header, payload) = _open_record(armored, wrapping_key)
    assert hint == HINT
    assert header.model == "string/v1"
    assert header.object_type == "password"
    assert payload == b'{"s":"pw"}'


def test_hint_accepts_coordinates(wrapping_key):
    coordinate = WrappingKeyCoordinate("vault", "key", "", "RSA-OAEP-256")
    armored = ConfidentialProducer().encrypt_string("pw", ProtectionParams(), coordinate, wrapping_key.public_key())
    assert _open_record(armored, wrapping_key)[0] == "vault/key//RSA-OAEP-256"


def test_hint_is_normalised(wrapping_key):
    armored = ConfidentialProducer().encrypt_string("pw", ProtectionParams(), "vault/key", wrapping_key.public_key())
    assert _open_record(armored, wrapping_key)[0] == "vault/key//"


def test_invalid_inputs(wrapping_key):
    producer = ConfidentialProducer()
    with pytest.raises(InvalidProtection):
        producer.encrypt_string("pw", ProtectionParams(), "a/b/c/d/e", wrapping_key.public_key())
    with pytest.raises(InvalidProtection):
        producer.encrypt_string("pw", ProtectionParams(), HINT, ec.generate_private_key(ec.SECP256R1()).public_key())
    with pytest.raises(InvalidProtection):
        producer.encrypt_string("pw", ProtectionParams(create_limit=10, expiry=5), HINT, wrapping_key.public_key())
    with pytest.raises(InvalidProtection):
        producer.encrypt_subscription_keys("k", "k", ProtectionParams(), HINT, wrapping_key.public_key())


def test_convenience_methods_pick_models(wrapping_key):
    producer = ConfidentialProducer()
    pub = wrapping_key.public_key()
    p = ProtectionParams()
    sealed = {
        "kv/secret/v1": producer.encrypt_secret("pw", p, HINT, pub, content_type="text/plain"),
        "kv/key/v1": producer.encrypt_key(jwk_lib.from_symmetric(b"k" * 32), p, HINT, pub),
        "apim/named-value/v1": producer.encrypt_named_value("v", p, HINT, pub),
        "apim/subscription/v1": producer.encrypt_subscription_keys("a", "b", p, HINT, pub),
        "general/content/v1": producer.encrypt_content("c", p, HINT, pub),
    }
    for model, armored in sealed.items():
        assert _open_record(armored, wrapping_key)[1][0].model == model


def test_explicit_helper_overrides_payload_type(wrapping_key):
    with pytest.raises(InvalidProtection):
        ConfidentialProducer().encrypt(StringData("pw"), ProtectionParams(), HINT,
                                       wrapping_key.public_key(), helper=ContentHelper())


def test_object_type_override(wrapping_key):
    armored = encrypt(StringData("pw"), ProtectionParams(object_type="service password"), HINT,
                      wrapping_key.public_key())
    assert _open_record(armored, wrapping_key)[1][0].object_type == "service password"


def test_produce_is_audited(tmp_path, wrapping_key):
    audit = AuditLogger(str(tmp_path / "audit.log"))
    producer = ConfidentialProducer(audit_logger=audit)
    armored = producer.encrypt_string("pw", ProtectionParams(num_uses=2), HINT, wrapping_key.public_key())
    uuid = _open_record(armored, wrapping_key)[1][0].uuid

    events = audit.events_for(uuid, EventType.ENVELOPE_PRODUCED)
    assert len(events) == 1
    assert events[0]["details"]["num_uses"] == 2
    assert set(events[0]["details"]) == {"envelope_uuid", "model", "num_uses", "expiry"}


def test_encrypt_certificate_reemits_encrypted_key_clear(wrapping_key):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "producer.test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    bundle = cert.public_bytes(serialization.Encoding.PEM) + key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
        serialization.BestAvailableEncryption(b"pw"))

    armored = ConfidentialProducer().encrypt_certificate(bundle, ProtectionParams(), HINT,
                                                         wrapping_key.public_key(), password="pw")
    header, cert_data = CertificateHelper().import_record(consume(armored, wrapping_key).record.to_bytes())
    assert header.model == "kv/certificate/v1"
    assert isinstance(cert_data, CertificateData)
    assert cert_data.format == PEM_FORMAT
    assert cert_data.password == ""
    assert b"ENCRYPTED PRIVATE KEY" not in cert_data.data
