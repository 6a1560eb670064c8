from typing import Any, Dict, Type

from confidential.errors import InvalidProtection, MalformedEnvelope
from confidential.helpers.base import ConfidentialDataHelper
from confidential.helpers.certificate import CertificateHelper
from confidential.helpers.key import KeyHelper
from confidential.helpers.strings import ContentHelper, NamedValueHelper, SecretHelper, StringHelper
from confidential.helpers.subscription import SubscriptionHelper

_ALL = (
    StringHelper(),
    SecretHelper(),
    KeyHelper(),
    CertificateHelper(),
    NamedValueHelper(),
    SubscriptionHelper(),
    ContentHelper(),
)

HELPERS_BY_MODEL: Dict[str, ConfidentialDataHelper] = {h.model: h for h in _ALL}
HELPERS_BY_PAYLOAD: Dict[Type, ConfidentialDataHelper] = {h.payload_type: h for h in _ALL}


def helper_for_model(model: str) -> ConfidentialDataHelper:
    try:
        return HELPERS_BY_MODEL[model]
    except KeyError:
        raise MalformedEnvelope(f"unknown payload model: {model}")


def helper_for_payload(value: Any) -> ConfidentialDataHelper:
    try:
        return HELPERS_BY_PAYLOAD[type(value)]
    except KeyError:
        raise InvalidProtection(f"no helper for payload type {type(value).__name__}")
