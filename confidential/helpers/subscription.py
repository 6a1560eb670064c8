from typing import Any, Dict

from confidential.errors import InvalidProtection, MalformedEnvelope
from confidential.helpers.base import ConfidentialDataHelper, require_strings
from confidential.models.payloads import SubscriptionKeys


class SubscriptionHelper(ConfidentialDataHelper):
    model = "apim/subscription/v1"
    object_type = "subscription"
    payload_type = SubscriptionKeys
    fields = {"p": True, "s": True}

    def canonical(self, value: SubscriptionKeys) -> SubscriptionKeys:
        require_strings(self.model, [("primary", value.primary), ("secondary", value.secondary)])
        if not value.primary or not value.secondary:
            raise InvalidProtection("subscription keys must not be empty")
        if value.primary == value.secondary:
            raise InvalidProtection("primary and secondary subscription keys must differ")
        return value

    def to_json(self, value: SubscriptionKeys) -> Dict[str, Any]:
        return {"p": value.primary, "s": value.secondary}

    def from_json(self, doc: Dict[str, Any]) -> SubscriptionKeys:
        primary = self.string_member(doc, "p", allow_empty=False)
        secondary = self.string_member(doc, "s", allow_empty=False)
        if primary == secondary:
            raise MalformedEnvelope("primary and secondary subscription keys are equal")
        return SubscriptionKeys(primary, secondary)
