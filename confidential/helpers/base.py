from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Iterable, Mapping, Tuple, Type, TypeVar

from confidential.crypto.hashing import DEFAULT_MAX_SIZE
from confidential.errors import InvalidProtection, MalformedEnvelope, ModelMismatch
from confidential.models.header import ConfidentialHeader, ProtectionParams
from confidential.models.record import canonical_json, decode_record, encode_record, loads_strict

T = TypeVar("T")


class ConfidentialDataHelper(ABC, Generic[T]):
    """
    Serialises one payload variant into the envelope and back.

    Subclasses fix `model`, `object_type` and `payload_type` and describe
    their JSON shape; the helper stamps the model tag into the header and
    refuses records tagged for any other model.
    """

    model: str = ""
    object_type: str = ""
    payload_type: Type[T]
    # member name -> required
    fields: Mapping[str, bool] = {}
    sort_keys = True

    @abstractmethod
    def to_json(self, value: T) -> Dict[str, Any]:
        pass

    @abstractmethod
    def from_json(self, doc: Dict[str, Any]) -> T:
        pass

    def canonical(self, value: T) -> T:
        """Validate producer input and bring it to canonical form."""
        return value

    def create(self, value: T, protection: ProtectionParams) -> Tuple[ConfidentialHeader, bytes]:
        if not isinstance(value, self.payload_type):
            raise InvalidProtection(
                f"{self.model} expects {self.payload_type.__name__}, got {type(value).__name__}")
        protection.validate()
        value = self.canonical(value)
        header = ConfidentialHeader.new(self.model, self.object_type, protection)
        return header, canonical_json(self.to_json(value), sort_keys=self.sort_keys)

    def parse(self, header: ConfidentialHeader, payload_bytes: bytes) -> T:
        if header.model != self.model:
            raise ModelMismatch(self.model, header.model)
        doc = loads_strict(payload_bytes)
        if not isinstance(doc, dict):
            raise MalformedEnvelope(f"{self.model} payload is not an object")
        self.check_members(doc, self.fields)
        return self.from_json(doc)

    def export(self, value: T, protection: ProtectionParams) -> Tuple[ConfidentialHeader, bytes]:
        """Header plus the gzipped record that goes into the envelope."""
        header, payload_bytes = self.create(value, protection)
        return header, encode_record(header, payload_bytes)

    def import_record(self, record: bytes, max_size: int = DEFAULT_MAX_SIZE) -> Tuple[ConfidentialHeader, T]:
        header, payload_bytes = decode_record(record, max_size)
        return header, self.parse(header, payload_bytes)

    def check_members(self, doc: Mapping[str, Any], fields: Mapping[str, bool], where: str = "payload"):
        unknown = set(doc) - set(fields)
        if unknown:
            raise MalformedEnvelope(f"unknown {self.model} {where} fields: {', '.join(sorted(unknown))}")
        for name, required in fields.items():
            if required and name not in doc:
                raise MalformedEnvelope(f"{self.model} {where} field {name} is missing")

    def string_member(self, doc: Mapping[str, Any], name: str, allow_empty: bool = True) -> str:
        value = doc.get(name, "")
        if not isinstance(value, str):
            raise MalformedEnvelope(f"{self.model} field {name} must be a string")
        if not allow_empty and not value:
            raise MalformedEnvelope(f"{self.model} field {name} must not be empty")
        return value


def require_strings(model: str, values: Iterable[Tuple[str, Any]]):
    for name, value in values:
        if not isinstance(value, str):
            raise InvalidProtection(f"{model} field {name} must be a string")
