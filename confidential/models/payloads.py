"""
Payload variants carried inside an envelope, one per model tag.

Instances are created once by the producer and parsed once by the consumer;
none of them are mutated in between.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

PEM_FORMAT = "application/x-pem-file"
PKCS12_FORMAT = "application/x-pkcs12"
CERTIFICATE_FORMATS = (PEM_FORMAT, PKCS12_FORMAT)


@dataclass(frozen=True)
class StringData:
    value: str = field(repr=False)


@dataclass(frozen=True)
class SecretData:
    value: str = field(repr=False)
    content_type: Optional[str] = None


@dataclass(frozen=True)
class KeyData:
    jwk: Dict[str, Any] = field(repr=False)

    @property
    def kty(self) -> str:
        return self.jwk.get("kty", "")


@dataclass(frozen=True)
class CertificateData:
    data: bytes = field(repr=False)
    format: str = PEM_FORMAT
    password: str = field(default="", repr=False)


@dataclass(frozen=True)
class NamedValueData:
    value: str = field(repr=False)


@dataclass(frozen=True)
class SubscriptionKeys:
    primary: str = field(repr=False)
    secondary: str = field(repr=False)


@dataclass(frozen=True)
class ContentData:
    value: str = field(repr=False)
