import re
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from confidential.models.payloads import PEM_FORMAT, PKCS12_FORMAT, CertificateData

_PEM_BLOCK = re.compile(
    rb'-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n.*?-----END (?P=label)-----\r?\n?',
    re.DOTALL,
)
PRIVATE_KEY_LABELS = {b"PRIVATE KEY", b"RSA PRIVATE KEY", b"EC PRIVATE KEY", b"ENCRYPTED PRIVATE KEY"}


class InvalidCertificate(ValueError):
    pass


def _password_bytes(password: str) -> Optional[bytes]:
    return password.encode('utf-8') if password else None


def _is_encrypted(label: bytes, block: bytes) -> bool:
    # Traditional OpenSSL encryption is announced in the block headers
    return label == b"ENCRYPTED PRIVATE KEY" or b"Proc-Type: 4,ENCRYPTED" in block


def canonicalize_pem(data: bytes, password: str = "") -> bytes:
    """
    Keep a PEM bundle verbatim except for an encrypted private key block,
    which is decrypted with the password and re-emitted as clear PKCS#8.
    """
    blocks = list(_PEM_BLOCK.finditer(data))
    certs = [m for m in blocks if m.group('label') == b"CERTIFICATE"]
    keys = [m for m in blocks if m.group('label') in PRIVATE_KEY_LABELS]
    if not certs:
        raise InvalidCertificate("PEM bundle contains no certificate")
    if len(keys) != 1:
        raise InvalidCertificate("PEM bundle must contain exactly one private key")

    for m in certs:
        try:
            x509.load_pem_x509_certificate(m.group(0))
        except ValueError:
            raise InvalidCertificate("PEM bundle contains an unreadable certificate")

    key_block = keys[0]
    encrypted = _is_encrypted(key_block.group('label'), key_block.group(0))
    if encrypted and not password:
        raise InvalidCertificate("Private key is encrypted, but no password was supplied")
    try:
        key = serialization.load_pem_private_key(
            key_block.group(0), password=_password_bytes(password) if encrypted else None)
    except (TypeError, ValueError):
        raise InvalidCertificate("Cannot read the private key (wrong password?)")
    if not encrypted:
        return data

    clear = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return data[:key_block.start()] + clear + data[key_block.end():]


def verify_pkcs12(data: bytes, password: str = "") -> None:
    try:
        key, cert, _ = pkcs12.load_key_and_certificates(data, _password_bytes(password))
    except (TypeError, ValueError):
        raise InvalidCertificate("Cannot open the PKCS#12 bundle (wrong password?)")
    if cert is None:
        raise InvalidCertificate("PKCS#12 bundle contains no certificate")


def canonicalize_certificate(cert: CertificateData) -> CertificateData:
    if cert.format == PEM_FORMAT:
        return CertificateData(data=canonicalize_pem(cert.data, cert.password), format=PEM_FORMAT, password="")
    if cert.format == PKCS12_FORMAT:
        verify_pkcs12(cert.data, cert.password)
        return cert
    raise InvalidCertificate(f"Unsupported certificate format: {cert.format}")
