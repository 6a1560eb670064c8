import json
from typing import Any, Dict, List, Tuple

from confidential.crypto.hashing import DEFAULT_MAX_SIZE, gzip_compress, gzip_decompress
from confidential.errors import MalformedEnvelope
from confidential.models.header import ConfidentialHeader

RECORD_KEYS = {"data", "header"}


def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    out = {}
    for key, value in pairs:
        if key in out:
            raise MalformedEnvelope(f"duplicate field in record: {key}")
        out[key] = value
    return out


def canonical_json(value: Any, sort_keys: bool = True) -> bytes:
    return json.dumps(value, sort_keys=sort_keys, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def loads_strict(data: bytes) -> Any:
    try:
        return json.loads(data.decode('utf-8'), object_pairs_hook=_reject_duplicates)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedEnvelope(f"record is not valid JSON: {e}")


def encode_record(header: ConfidentialHeader, payload_bytes: bytes) -> bytes:
    """gzip({"data": <payload>, "header": <header>}). Payload bytes are embedded as produced."""
    body = b'{"data":' + payload_bytes + b',"header":' + canonical_json(header.to_json()) + b'}'
    return gzip_compress(body)


def decode_record(record: bytes, max_size: int = DEFAULT_MAX_SIZE) -> Tuple[ConfidentialHeader, bytes]:
    """Returns the header and the payload re-serialised in its original member order."""
    doc = loads_strict(gzip_decompress(record, max_size))
    if not isinstance(doc, dict) or set(doc) != RECORD_KEYS:
        raise MalformedEnvelope("record must hold exactly data and header")
    header = ConfidentialHeader.from_json(doc["header"])
    return header, canonical_json(doc["data"], sort_keys=False)
