"""
Producer side: plaintext plus protection parameters in, armored envelope out.
"""

import logging
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives.asymmetric import rsa

from confidential.audit.logger import AuditLogger, EventType
from confidential.crypto.envelope import EnvelopeCodec
from confidential.errors import InvalidProtection
from confidential.helpers.base import ConfidentialDataHelper
from confidential.helpers.registry import helper_for_payload
from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.models.header import ProtectionParams
from confidential.models.payloads import (
    PEM_FORMAT,
    CertificateData,
    ContentData,
    KeyData,
    NamedValueData,
    SecretData,
    StringData,
    SubscriptionKeys,
)

logger = logging.getLogger(__name__)

HintLike = Union[str, WrappingKeyCoordinate]


def _hint_text(hint: HintLike) -> str:
    if isinstance(hint, WrappingKeyCoordinate):
        return hint.to_hint()
    try:
        return WrappingKeyCoordinate.from_hint(hint).to_hint()
    except ValueError as e:
        raise InvalidProtection(f"wrapping key hint: {e}")


class ConfidentialProducer:

    def __init__(self, codec: Optional[EnvelopeCodec] = None, audit_logger: Optional[AuditLogger] = None):
        self.codec = codec or EnvelopeCodec()
        self.audit_logger = audit_logger

    def encrypt(
        self,
        payload: Any,
        protection: ProtectionParams,
        wrapping_key_hint: HintLike,
        wrapping_pub_key: rsa.RSAPublicKey,
        helper: Optional[ConfidentialDataHelper] = None,
    ) -> str:
        """
        Seal one payload.

        The helper is picked from the payload type unless given. Raises
        InvalidProtection when the payload or its protection is unacceptable.
        """
        if not isinstance(wrapping_pub_key, rsa.RSAPublicKey):
            raise InvalidProtection("wrapping key must be an RSA public key")
        helper = helper or helper_for_payload(payload)
        hint = _hint_text(wrapping_key_hint)

        header, record = helper.export(payload, protection)
        armored = self.codec.produce(record, wrapping_pub_key, hint)

        logger.info("Envelope produced", extra={'envelope_uuid': header.uuid, 'model': header.model})
        if self.audit_logger:
            self.audit_logger.log_event(
                EventType.ENVELOPE_PRODUCED,
                actor="producer",
                details={
                    "envelope_uuid": header.uuid,
                    "model": header.model,
                    "num_uses": header.num_uses,
                    "expiry": header.expiry,
                },
            )
        return armored

    def encrypt_string(self, value: str, protection: ProtectionParams, hint: HintLike, pub_key) -> str:
        return self.encrypt(StringData(value), protection, hint, pub_key)

    def encrypt_secret(self, value: str, protection: ProtectionParams, hint: HintLike, pub_key,
                       content_type: Optional[str] = None) -> str:
        return self.encrypt(SecretData(value, content_type), protection, hint, pub_key)

    def encrypt_key(self, jwk: Dict[str, Any], protection: ProtectionParams, hint: HintLike, pub_key) -> str:
        return self.encrypt(KeyData(jwk), protection, hint, pub_key)

    def encrypt_certificate(self, data: bytes, protection: ProtectionParams, hint: HintLike, pub_key,
                            format: str = PEM_FORMAT, password: str = "") -> str:
        return self.encrypt(CertificateData(data, format, password), protection, hint, pub_key)

    def encrypt_named_value(self, value: str, protection: ProtectionParams, hint: HintLike, pub_key) -> str:
        return self.encrypt(NamedValueData(value), protection, hint, pub_key)

    def encrypt_subscription_keys(self, primary: str, secondary: str, protection: ProtectionParams,
                                  hint: HintLike, pub_key) -> str:
        return self.encrypt(SubscriptionKeys(primary, secondary), protection, hint, pub_key)

    def encrypt_content(self, value: str, protection: ProtectionParams, hint: HintLike, pub_key) -> str:
        return self.encrypt(ContentData(value), protection, hint, pub_key)


_default_producer = ConfidentialProducer()


def encrypt(payload: Any, protection: ProtectionParams, wrapping_key_hint: HintLike,
            wrapping_pub_key: rsa.RSAPublicKey) -> str:
    return _default_producer.encrypt(payload, protection, wrapping_key_hint, wrapping_pub_key)

