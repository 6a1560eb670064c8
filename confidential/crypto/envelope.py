import base64
import binascii
import logging
import re
import struct
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.hazmat.primitives.asymmetric import rsa

from confidential.crypto.engine import NONCE_LEN, SESSION_KEY_LEN, TAG_LEN, CryptoEngine
from confidential.crypto.hashing import DEFAULT_MAX_SIZE
from confidential.errors import (
    AuthenticationFailed,
    MalformedEnvelope,
    SizeLimitExceeded,
    UnsupportedVersion,
    WrappingDecryptFailed,
)
from confidential.kms.provider import DecrypterLike, DecrypterUnavailable, WrappedKeyRejected, as_decrypter
from confidential.security.buffers import SecretBuffer
from confidential.security.cancellation import CancellationToken, check

logger = logging.getLogger(__name__)

# Format (all lengths big-endian):
#   VER (1 byte)                          0x01
#   LEN (2 bytes) | HINT                  UTF-8 wrapping key hint
#   LEN (4 bytes) | WRAPPED_KEY           RSA-OAEP-SHA-256 wrapped session key
#   LEN (4 bytes) | NONCE(12) | CT | TAG(16)
# AAD = HINT || VER. Nothing may follow the last field.

VERSION = 0x01
ARMOR_BEGIN = "-----BEGIN CONFIDENTIAL ENVELOPE-----"
ARMOR_END = "-----END CONFIDENTIAL ENVELOPE-----"
LINE_WIDTH = 64
MAX_HINT_LEN = 0xFFFF

_BASE64_LINE = re.compile(r'^[A-Za-z0-9+/=]+$')


@dataclass(frozen=True)
class EnvelopeParts:
    version: int
    hint: bytes
    wrapped_key: bytes
    nonce: bytes
    ciphertext: bytes  # includes the 16-byte tag

    @property
    def aad(self) -> bytes:
        return self.hint + bytes([self.version])

    def hint_text(self) -> str:
        try:
            return self.hint.decode('utf-8')
        except UnicodeDecodeError:
            raise MalformedEnvelope("wrapping key hint is not valid UTF-8")


@dataclass
class ParsedEnvelope:
    """Result of a successful consume. The caller owns (and must wipe) the record."""
    hint: str
    record: SecretBuffer


def armor(body: bytes) -> str:
    encoded = base64.b64encode(body).decode('ascii')
    lines = [encoded[i:i + LINE_WIDTH] for i in range(0, len(encoded), LINE_WIDTH)]
    return "\n".join([ARMOR_BEGIN, *lines, ARMOR_END]) + "\n"


def dearmor(text: Union[str, bytes], max_size: int = DEFAULT_MAX_SIZE) -> bytes:
    """
    Strictly decode an armored envelope.

    Only the folding produced by armor() is accepted: exact frame lines,
    full 64-column lines, base64 alphabet only, canonical padding. Any
    deviation is MalformedEnvelope, so a flipped bit cannot be absorbed by a
    lenient decoder.
    """
    if isinstance(text, bytes):
        try:
            text = text.decode('ascii')
        except UnicodeDecodeError:
            raise MalformedEnvelope("armored envelope contains non-ASCII bytes")

    # base64 expands by 4/3; anything longer cannot decode under the ceiling
    if len(text) > (max_size // 3 + 1) * 4 + (max_size // 48 + 1) * 2 + len(ARMOR_BEGIN) + len(ARMOR_END) + 8:
        raise SizeLimitExceeded(f"armored envelope exceeds {max_size} bytes")

    lines = [line.rstrip('\r') for line in text.strip(' \r\n').split('\n')]
    if len(lines) < 3 or lines[0] != ARMOR_BEGIN or lines[-1] != ARMOR_END:
        raise MalformedEnvelope("missing or damaged envelope frame")

    body_lines = lines[1:-1]
    for i, line in enumerate(body_lines):
        if not _BASE64_LINE.match(line):
            raise MalformedEnvelope("envelope body is not base64")
        last = i == len(body_lines) - 1
        if (not last and len(line) != LINE_WIDTH) or len(line) > LINE_WIDTH:
            raise MalformedEnvelope("envelope body is not folded at 64 columns")

    encoded = "".join(body_lines)
    if len(encoded) // 4 * 3 > max_size:
        raise SizeLimitExceeded(f"envelope body exceeds {max_size} bytes")

    try:
        body = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedEnvelope("envelope body is not base64")
    if base64.b64encode(body).decode('ascii') != encoded:
        raise MalformedEnvelope("envelope body is not canonical base64")
    return body


def pack_body(parts: EnvelopeParts) -> bytes:
    if len(parts.hint) > MAX_HINT_LEN:
        raise MalformedEnvelope(f"wrapping key hint longer than {MAX_HINT_LEN} bytes")
    sealed = parts.nonce + parts.ciphertext
    return b"".join([
        struct.pack('B', parts.version),
        struct.pack('>H', len(parts.hint)), parts.hint,
        struct.pack('>I', len(parts.wrapped_key)), parts.wrapped_key,
        struct.pack('>I', len(sealed)), sealed,
    ])


class _Reader:
    """
    Cursor over the body that refuses any length it cannot satisfy.

    The body is already bounded by the size ceiling, so a length running past
    the remaining bytes is the only way a field can exceed it.
    """

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int, what: str) -> bytes:
        if n > len(self.data) - self.pos:
            raise MalformedEnvelope(f"truncated envelope ({what})")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def uint(self, fmt: str, what: str) -> int:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt), what))[0]

    @property
    def exhausted(self) -> bool:
        return self.pos == len(self.data)


def unpack_body(body: bytes, max_size: int = DEFAULT_MAX_SIZE) -> EnvelopeParts:
    if len(body) > max_size:
        raise SizeLimitExceeded(f"envelope body exceeds {max_size} bytes")

    reader = _Reader(body)
    version = reader.uint('B', "version")
    if version != VERSION:
        raise UnsupportedVersion(f"envelope version {version} is not supported")

    hint = reader.take(reader.uint('>H', "hint length"), "hint")
    wrapped_key = reader.take(reader.uint('>I', "wrapped key length"), "wrapped key")
    sealed = reader.take(reader.uint('>I', "ciphertext length"), "ciphertext")
    if not reader.exhausted:
        raise MalformedEnvelope("trailing bytes after envelope")
    if not wrapped_key:
        raise MalformedEnvelope("empty wrapped key")
    if len(sealed) < NONCE_LEN + TAG_LEN:
        raise MalformedEnvelope("ciphertext shorter than nonce and tag")

    return EnvelopeParts(
        version=version,
        hint=hint,
        wrapped_key=wrapped_key,
        nonce=sealed[:NONCE_LEN],
        ciphertext=sealed[NONCE_LEN:],
    )


class EnvelopeCodec:
    """Builds and opens the two-layer envelope (wrapped session key + AES-GCM record)."""

    def __init__(self, engine: Optional[CryptoEngine] = None):
        self.engine = engine or CryptoEngine()

    def produce(self, plain_record: bytes, wrapping_pub_key: rsa.RSAPublicKey, hint: str) -> str:
        hint_bytes = hint.encode('utf-8')
        if len(hint_bytes) > MAX_HINT_LEN:
            raise MalformedEnvelope(f"wrapping key hint longer than {MAX_HINT_LEN} bytes")

        with SecretBuffer.adopt(self.engine.generate_session_key()) as key:
            nonce = self.engine.generate_nonce()
            aad = hint_bytes + bytes([VERSION])
            ciphertext = self.engine.aead_encrypt(key.buffer, nonce, plain_record, aad)
            wrapped = self.engine.wrap_session_key(key.buffer, wrapping_pub_key)

        body = pack_body(EnvelopeParts(VERSION, hint_bytes, wrapped, nonce, ciphertext))
        return armor(body)

    def consume(
        self,
        armored: Union[str, bytes],
        rsa_decrypt: DecrypterLike,
        max_size: int = DEFAULT_MAX_SIZE,
        cancellation: Optional[CancellationToken] = None,
    ) -> ParsedEnvelope:
        parts = unpack_body(dearmor(armored, max_size), max_size)
        hint = parts.hint_text()
        decrypter = as_decrypter(rsa_decrypt)

        check(cancellation)
        try:
            unwrapped = decrypter.decrypt(parts.wrapped_key, cancellation)
        except WrappedKeyRejected:
            # A damaged wrapped key is tamper evidence, not a service outage
            raise AuthenticationFailed("session key authentication failed")
        except DecrypterUnavailable as e:
            logger.warning("Wrapping key service unavailable", extra={'hint': hint})
            raise WrappingDecryptFailed(str(e))
        check(cancellation)

        with SecretBuffer(unwrapped) as key:
            if len(key) != SESSION_KEY_LEN:
                raise AuthenticationFailed("session key authentication failed")
            plaintext = self.engine.aead_decrypt(key.buffer, parts.nonce, parts.ciphertext, parts.aad)

        return ParsedEnvelope(hint=hint, record=SecretBuffer.adopt(bytearray(plaintext)))


_default_codec = EnvelopeCodec()


def produce(plain_record: bytes, wrapping_pub_key: rsa.RSAPublicKey, hint: str) -> str:
    return _default_codec.produce(plain_record, wrapping_pub_key, hint)


def consume(
    armored: Union[str, bytes],
    rsa_decrypt: DecrypterLike,
    max_size: int = DEFAULT_MAX_SIZE,
    cancellation: Optional[CancellationToken] = None,
) -> ParsedEnvelope:
    return _default_codec.consume(armored, rsa_decrypt, max_size, cancellation)
