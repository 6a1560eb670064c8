import os
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from confidential.crypto.engine import oaep_sha256
from confidential.kms.provider import RSADecrypter, WrappedKeyRejected
from confidential.security.cancellation import CancellationToken, check


class LocalRSADecrypter(RSADecrypter):
    """RSA private key held in process memory.

    Meant for tests and for operators who keep the wrapping key on disk
    (protected via file perms); production consumers use a key service.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey):
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise TypeError("LocalRSADecrypter requires an RSA private key")
        self.private_key = private_key

    @classmethod
    def from_pem(cls, data: bytes, password: Optional[bytes] = None) -> "LocalRSADecrypter":
        return cls(serialization.load_pem_private_key(data, password=password))

    @classmethod
    def from_file(cls, key_path: str, password: Optional[bytes] = None) -> "LocalRSADecrypter":
        with open(key_path, 'rb') as f:
            return cls.from_pem(f.read(), password)

    @classmethod
    def generate(cls, key_size: int = 2048) -> "LocalRSADecrypter":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    def save(self, key_path: str):
        """Write the private key as unencrypted PKCS#8 PEM with 0600 perms."""
        pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        with open(key_path, 'wb') as f:
            f.write(pem)
        os.chmod(key_path, 0o600)

    def decrypt(self, ciphertext: bytes, cancellation: Optional[CancellationToken] = None) -> bytes:
        check(cancellation)
        try:
            return self.private_key.decrypt(ciphertext, oaep_sha256())
        except ValueError:
            raise WrappedKeyRejected("wrapped key does not decrypt under this key")
