import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from confidential.errors import AuthenticationFailed

# Session key length (bytes). AES-256.
SESSION_KEY_LEN = 32
NONCE_LEN = 12
TAG_LEN = 16

# Name of the wrapping algorithm as key services spell it
WRAPPING_ALGORITHM = "RSA-OAEP-256"


def oaep_sha256() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


class CryptoEngine:
    """Primitives composing one envelope: AES-256-GCM content, RSA-OAEP-SHA-256 key wrap."""

    def generate_session_key(self) -> bytearray:
        """Fresh 256-bit session key. Returned mutable so the caller can wipe it."""
        return bytearray(os.urandom(SESSION_KEY_LEN))

    def generate_nonce(self) -> bytes:
        return os.urandom(NONCE_LEN)

    def aead_encrypt(self, key, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
        """Encrypt; output is ciphertext || 16-byte tag."""
        return AESGCM(bytes(key)).encrypt(nonce, plaintext, aad)

    def aead_decrypt(self, key, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
        try:
            return AESGCM(bytes(key)).decrypt(nonce, ciphertext, aad)
        except InvalidTag:
            # Never say where the data disagreed
            raise AuthenticationFailed("content authentication failed")

    def wrap_session_key(self, session_key, public_key: rsa.RSAPublicKey) -> bytes:
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise TypeError("Wrapping key must be an RSA public key")
        return public_key.encrypt(bytes(session_key), oaep_sha256())
