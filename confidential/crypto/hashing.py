import gzip
import hashlib
import zlib
from typing import Union

from confidential.errors import MalformedEnvelope, SizeLimitExceeded

# 16 MiB ceiling shared by the codec and the record decompressor
DEFAULT_MAX_SIZE = 16 * 1024 * 1024

_DECOMPRESS_CHUNK = 64 * 1024


def sha256_hex(value: Union[str, bytes]) -> str:
    """SHA-256 hex digest used as a content-addressed identifier."""
    if isinstance(value, str):
        value = value.encode('utf-8')
    return hashlib.sha256(value).hexdigest()


def gzip_compress(data: bytes) -> bytes:
    # mtime=0 keeps the output stable for identical input
    return gzip.compress(data, mtime=0)


def gzip_decompress(data: bytes, max_size: int = DEFAULT_MAX_SIZE) -> bytes:
    """
    Decompress a gzip stream without ever producing more than max_size bytes.
    """
    decompressor = zlib.decompressobj(wbits=16 + zlib.MAX_WBITS)
    out = bytearray()
    pending = data
    try:
        while not decompressor.eof:
            chunk = decompressor.decompress(pending, _DECOMPRESS_CHUNK)
            out.extend(chunk)
            if len(out) > max_size:
                raise SizeLimitExceeded(f"decompressed record exceeds {max_size} bytes")
            pending = decompressor.unconsumed_tail
            if not chunk and not pending:
                break
        if not decompressor.eof:
            raise MalformedEnvelope("truncated compressed record")
        if decompressor.unused_data:
            raise MalformedEnvelope("trailing data after compressed record")
    except zlib.error as e:
        raise MalformedEnvelope(f"cannot decompress record: {e}")

    return bytes(out)
