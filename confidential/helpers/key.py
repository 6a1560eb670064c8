from typing import Any, Dict

from confidential.crypto import jwk as jwk_lib
from confidential.errors import InvalidProtection, MalformedEnvelope
from confidential.helpers.base import ConfidentialDataHelper
from confidential.models.payloads import KeyData


class KeyHelper(ConfidentialDataHelper):
    model = "kv/key/v1"
    object_type = "key"
    payload_type = KeyData
    fields = {"jwk": True}
    # JWK members keep their per-type order instead of being sorted
    sort_keys = False

    def canonical(self, value: KeyData) -> KeyData:
        try:
            return KeyData(jwk_lib.canonicalize(value.jwk))
        except jwk_lib.InvalidJWK as e:
            raise InvalidProtection(str(e))

    def to_json(self, value: KeyData) -> Dict[str, Any]:
        return {"jwk": value.jwk}

    def from_json(self, doc: Dict[str, Any]) -> KeyData:
        try:
            return KeyData(jwk_lib.canonicalize(doc["jwk"], strict=True))
        except jwk_lib.InvalidJWK as e:
            raise MalformedEnvelope(f"{self.model} key is invalid: {e}")
