"""
Placement targets and their constraint URIs.

Producers stamp these URIs into the envelope header; consumers rebuild the
URI of the object they are about to write and compare byte-for-byte after
canonicalisation (vault and service names lowercased, trailing slashes
trimmed).
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Optional

KEYVAULT_SCHEME = "az-c-keyvault://"
LABEL_SCHEME = "az-c-label:///"
KEYVAULT_KINDS = ("secrets", "keys", "certificates")

_KEYVAULT_URI = re.compile(r'^az-c-keyvault://(?P<vault>[^@/]*)@(?P<kind>[^=]+)=(?P<name>.*)$')
_APIM_SERVICE = re.compile(r'(/providers/Microsoft\.ApiManagement/service/)([^/?]+)', re.IGNORECASE)


def canonicalize_constraint(uri: str) -> str:
    uri = uri.rstrip('/')
    m = _KEYVAULT_URI.match(uri)
    if m:
        return f"{KEYVAULT_SCHEME}{m.group('vault').lower()}@{m.group('kind')}={m.group('name')}"
    if uri.startswith(LABEL_SCHEME):
        return _APIM_SERVICE.sub(lambda s: s.group(1) + s.group(2).lower(), uri, count=1)
    return uri


class PlacementTarget(ABC):
    """An external object about to receive plaintext."""

    @abstractmethod
    def constraint_uri(self) -> str:
        pass

    def is_relative(self) -> bool:
        return False

    def resolved(self, default_destination: Optional[str]) -> "PlacementTarget":
        return self

    def canonical_uri(self) -> str:
        return canonicalize_constraint(self.constraint_uri())


@dataclass(frozen=True)
class KeyVaultObjectTarget(PlacementTarget):
    vault: str
    kind: str
    name: str

    def __post_init__(self):
        if self.kind not in KEYVAULT_KINDS:
            raise ValueError(f"Unsupported key vault object kind: {self.kind}")

    def is_relative(self) -> bool:
        return not self.vault

    def resolved(self, default_destination: Optional[str]) -> "KeyVaultObjectTarget":
        if self.vault or not default_destination:
            return self
        return replace(self, vault=default_destination)

    def constraint_uri(self) -> str:
        return f"{KEYVAULT_SCHEME}{self.vault}@{self.kind}={self.name}"


def _apim_service_path(subscription: str, resource_group: str, service: str) -> str:
    return (f"{LABEL_SCHEME}subscriptions/{subscription}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.ApiManagement/service/{service}")


@dataclass(frozen=True)
class NamedValueTarget(PlacementTarget):
    subscription: str
    resource_group: str
    service: str
    name: str

    def constraint_uri(self) -> str:
        return f"{_apim_service_path(self.subscription, self.resource_group, self.service)}/namedValues/{self.name}"


@dataclass(frozen=True)
class SubscriptionTarget(PlacementTarget):
    subscription: str
    resource_group: str
    service: str
    subscription_id: str = ""
    api: str = ""
    product: str = ""
    user: str = ""

    def constraint_uri(self) -> str:
        return (f"{_apim_service_path(self.subscription, self.resource_group, self.service)}"
                f"/subscriptions/{self.subscription_id}"
                f"?api={self.api}/product={self.product}/user={self.user}")
