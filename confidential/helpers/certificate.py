import base64
import binascii
from typing import Any, Dict

from confidential.crypto.certificates import InvalidCertificate, canonicalize_certificate
from confidential.errors import InvalidProtection, MalformedEnvelope
from confidential.helpers.base import ConfidentialDataHelper
from confidential.models.payloads import CERTIFICATE_FORMATS, CertificateData


class CertificateHelper(ConfidentialDataHelper):
    model = "kv/certificate/v1"
    object_type = "certificate"
    payload_type = CertificateData
    fields = {"crt": True, "crt_f": True, "crt_p": False}

    def canonical(self, value: CertificateData) -> CertificateData:
        if not isinstance(value.data, (bytes, bytearray)) or not value.data:
            raise InvalidProtection("certificate data must be non-empty bytes")
        try:
            return canonicalize_certificate(
                CertificateData(bytes(value.data), value.format, value.password or ""))
        except InvalidCertificate as e:
            raise InvalidProtection(str(e))

    def to_json(self, value: CertificateData) -> Dict[str, Any]:
        doc = {
            "crt": base64.b64encode(value.data).decode('ascii'),
            "crt_f": value.format,
        }
        if value.password:
            doc["crt_p"] = value.password
        return doc

    def from_json(self, doc: Dict[str, Any]) -> CertificateData:
        fmt = self.string_member(doc, "crt_f")
        if fmt not in CERTIFICATE_FORMATS:
            raise MalformedEnvelope(f"{self.model} format {fmt} is not supported")
        try:
            data = base64.b64decode(self.string_member(doc, "crt", allow_empty=False), validate=True)
        except (binascii.Error, ValueError):
            raise MalformedEnvelope(f"{self.model} certificate is not base64")
        return CertificateData(data=data, format=fmt, password=self.string_member(doc, "crt_p"))
