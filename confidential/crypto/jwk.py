"""
JSON Web Key canonicalisation and loading.

Keys cross the envelope as JWKs with a fixed member order per key type. Only
key material is carried; usage members (`use`, `key_ops`, `alg`, `kid`, ...)
are dropped when a key is created and refused when one is parsed. Private keys
are self-checked: the public half must be consistent with the private half.
"""

import base64
from collections import OrderedDict
from typing import Any, Dict, Mapping, Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

MEMBER_ORDER = {
    "RSA": ("kty", "n", "e", "d", "p", "q", "dp", "dq", "qi"),
    "EC": ("kty", "crv", "x", "y", "d"),
    "oct": ("kty", "k"),
}
RSA_PRIVATE_MEMBERS = ("d", "p", "q", "dp", "dq", "qi")

CURVES = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "P-521": ec.SECP521R1,
    "P-256K": ec.SECP256K1,
}
_CURVE_NAMES = {cls.name: crv for crv, cls in CURVES.items()}


class InvalidJWK(ValueError):
    pass


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def b64url_decode(value: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise InvalidJWK("JWK member is not a base64url string")
    try:
        return base64.urlsafe_b64decode(value + '=' * (-len(value) % 4))
    except (ValueError, TypeError):
        raise InvalidJWK("JWK member is not a base64url string")


def _int_to_b64(value: int, length: Optional[int] = None) -> str:
    length = length or max(1, (value.bit_length() + 7) // 8)
    return b64url_encode(value.to_bytes(length, 'big'))


def _b64_to_int(value: str) -> int:
    return int.from_bytes(b64url_decode(value), 'big')


def _curve_size(curve: ec.EllipticCurve) -> int:
    return (curve.key_size + 7) // 8


def canonicalize(jwk: Mapping[str, Any], strict: bool = False) -> Dict[str, Any]:
    """
    Return the JWK with members in the fixed order for its key type.

    strict=False drops members that carry no key material; strict=True
    rejects them. The key is self-checked either way.
    """
    if not isinstance(jwk, Mapping):
        raise InvalidJWK("JWK must be an object")
    kty = jwk.get("kty")
    if kty not in MEMBER_ORDER:
        raise InvalidJWK(f"Unsupported key type: {kty}")
    order = MEMBER_ORDER[kty]

    extra = set(jwk) - set(order)
    if extra and strict:
        raise InvalidJWK(f"Unexpected JWK members: {', '.join(sorted(extra))}")

    out = OrderedDict()
    for name in order:
        if name in jwk:
            if not isinstance(jwk[name], str):
                raise InvalidJWK(f"JWK member {name} must be a string")
            out[name] = jwk[name]
    self_check(out)
    return dict(out)


def self_check(jwk: Mapping[str, Any]):
    kty = jwk["kty"]
    if kty == "oct":
        if not b64url_decode(jwk.get("k", "")):
            raise InvalidJWK("Symmetric key is empty")
        return

    if kty == "RSA":
        _to_rsa_key(jwk)
    else:
        _to_ec_key(jwk)


def _to_rsa_key(jwk: Mapping[str, Any]) -> Union[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    try:
        public = rsa.RSAPublicNumbers(e=_b64_to_int(jwk["e"]), n=_b64_to_int(jwk["n"]))
    except KeyError:
        raise InvalidJWK("RSA key requires n and e")

    present = [m for m in RSA_PRIVATE_MEMBERS if m in jwk]
    if not present:
        try:
            return public.public_key()
        except ValueError:
            raise InvalidJWK("RSA public key is invalid")
    if len(present) != len(RSA_PRIVATE_MEMBERS):
        raise InvalidJWK("RSA private key requires d, p, q, dp, dq and qi")

    private = rsa.RSAPrivateNumbers(
        p=_b64_to_int(jwk["p"]),
        q=_b64_to_int(jwk["q"]),
        d=_b64_to_int(jwk["d"]),
        dmp1=_b64_to_int(jwk["dp"]),
        dmq1=_b64_to_int(jwk["dq"]),
        iqmp=_b64_to_int(jwk["qi"]),
        public_numbers=public,
    )
    try:
        # cryptography verifies the numbers are mutually consistent
        return private.private_key()
    except ValueError:
        raise InvalidJWK("RSA private key does not match its public component")


def _to_ec_key(jwk: Mapping[str, Any]) -> Union[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    curve_cls = CURVES.get(jwk.get("crv"))
    if curve_cls is None:
        raise InvalidJWK(f"Unsupported curve: {jwk.get('crv')}")
    curve = curve_cls()
    try:
        x, y = _b64_to_int(jwk["x"]), _b64_to_int(jwk["y"])
    except KeyError:
        raise InvalidJWK("EC key requires x and y")

    if "d" not in jwk:
        try:
            return ec.EllipticCurvePublicNumbers(x, y, curve).public_key()
        except ValueError:
            raise InvalidJWK("EC public point is not on the curve")

    try:
        key = ec.derive_private_key(_b64_to_int(jwk["d"]), curve)
    except ValueError:
        raise InvalidJWK("EC private scalar is invalid")
    derived = key.public_key().public_numbers()
    if (derived.x, derived.y) != (x, y):
        raise InvalidJWK("EC private key does not match its public component")
    return key


def from_key(key) -> Dict[str, Any]:
    """JWK of a `cryptography` RSA or EC key object (private or public)."""
    if isinstance(key, rsa.RSAPrivateKey):
        nums = key.private_numbers()
        pub = nums.public_numbers
        return {
            "kty": "RSA",
            "n": _int_to_b64(pub.n),
            "e": _int_to_b64(pub.e),
            "d": _int_to_b64(nums.d),
            "p": _int_to_b64(nums.p),
            "q": _int_to_b64(nums.q),
            "dp": _int_to_b64(nums.dmp1),
            "dq": _int_to_b64(nums.dmq1),
            "qi": _int_to_b64(nums.iqmp),
        }
    if isinstance(key, rsa.RSAPublicKey):
        pub = key.public_numbers()
        return {"kty": "RSA", "n": _int_to_b64(pub.n), "e": _int_to_b64(pub.e)}

    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        crv = _CURVE_NAMES.get(key.curve.name)
        if crv is None:
            raise InvalidJWK(f"Unsupported curve: {key.curve.name}")
        size = _curve_size(key.curve)
        public = key.public_key() if isinstance(key, ec.EllipticCurvePrivateKey) else key
        pub = public.public_numbers()
        out = {
            "kty": "EC",
            "crv": crv,
            "x": _int_to_b64(pub.x, size),
            "y": _int_to_b64(pub.y, size),
        }
        if isinstance(key, ec.EllipticCurvePrivateKey):
            out["d"] = _int_to_b64(key.private_numbers().private_value, size)
        return out

    raise InvalidJWK(f"Unsupported key object: {type(key).__name__}")


def from_symmetric(material: bytes) -> Dict[str, Any]:
    if not material:
        raise InvalidJWK("Symmetric key is empty")
    return {"kty": "oct", "k": b64url_encode(material)}


def load_private_key(data: bytes, password: Optional[bytes] = None) -> Dict[str, Any]:
    """
    JWK from PEM (PKCS#8 clear or encrypted, traditional RSA/EC) or DER.
    """
    if b"-----BEGIN" in data:
        loader = serialization.load_pem_private_key
    else:
        loader = serialization.load_der_private_key
    try:
        key = loader(data, password=password)
    except TypeError as e:
        # Raised for a missing or superfluous password
        raise InvalidJWK(f"Cannot load private key: {e}")
    except ValueError:
        raise InvalidJWK("Cannot load private key: unsupported format or wrong password")
    return canonicalize(from_key(key))
