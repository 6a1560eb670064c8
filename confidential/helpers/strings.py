from dataclasses import replace
from typing import Any, Dict

from confidential.helpers.base import ConfidentialDataHelper, require_strings
from confidential.models.payloads import ContentData, NamedValueData, SecretData, StringData


class _SingleStringHelper(ConfidentialDataHelper):
    fields = {"s": True}

    def canonical(self, value):
        require_strings(self.model, [("value", value.value)])
        return value

    def to_json(self, value) -> Dict[str, Any]:
        return {"s": value.value}

    def from_json(self, doc: Dict[str, Any]):
        return self.payload_type(self.string_member(doc, "s"))


class StringHelper(_SingleStringHelper):
    model = "string/v1"
    object_type = "password"
    payload_type = StringData


class NamedValueHelper(_SingleStringHelper):
    model = "apim/named-value/v1"
    object_type = "named value"
    payload_type = NamedValueData


class ContentHelper(_SingleStringHelper):
    model = "general/content/v1"
    object_type = "content"
    payload_type = ContentData


class SecretHelper(ConfidentialDataHelper):
    model = "kv/secret/v1"
    object_type = "secret"
    payload_type = SecretData
    fields = {"s": True, "ct": False}

    def canonical(self, value: SecretData) -> SecretData:
        require_strings(self.model, [("value", value.value)])
        if value.content_type is not None:
            require_strings(self.model, [("content_type", value.content_type)])
        if value.content_type == "":
            return replace(value, content_type=None)
        return value

    def to_json(self, value: SecretData) -> Dict[str, Any]:
        doc = {"s": value.value}
        if value.content_type:
            doc["ct"] = value.content_type
        return doc

    def from_json(self, doc: Dict[str, Any]) -> SecretData:
        content_type = None
        if "ct" in doc:
            content_type = self.string_member(doc, "ct", allow_empty=False)
        return SecretData(self.string_member(doc, "s"), content_type)
