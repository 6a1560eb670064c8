#!/usr/bin/env python3
"""Encrypt a secret value into an armored confidential envelope."""
import argparse
import base64
import binascii
import logging
import re
import sys

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from confidential.crypto import jwk as jwk_lib
from confidential.crypto.engine import WRAPPING_ALGORITHM
from confidential.errors import ConfidentialError
from confidential.kms.aws_kms import AWSKMSDecrypter
from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.logging.json_logger import configure_json_logging
from confidential.models.header import SECONDS_PER_DAY, SECONDS_PER_HOUR, ProtectionParams
from confidential.models.payloads import (
    PEM_FORMAT,
    PKCS12_FORMAT,
    CertificateData,
    ContentData,
    KeyData,
    NamedValueData,
    SecretData,
    StringData,
    SubscriptionKeys,
)
from confidential.policy.placement import KeyVaultObjectTarget, NamedValueTarget, SubscriptionTarget
from confidential.producer import ConfidentialProducer

DEFAULT_CREATE_LIMIT = "72h"
DEFAULT_EXPIRY_DAYS = 365
DEFAULT_NUM_USES = 10

_DURATION = re.compile(r'^(\d+)([smhd]?)$')
_UNITS = {"": 1, "s": 1, "m": 60, "h": SECONDS_PER_HOUR, "d": SECONDS_PER_DAY}


class CLIError(Exception):
    pass


def parse_duration(value: str) -> int:
    """Seconds in `90`, `90s`, `30m`, `72h` or `3d`."""
    m = _DURATION.match(value.strip())
    if not m:
        raise argparse.ArgumentTypeError(f"invalid duration: {value}")
    return int(m.group(1)) * _UNITS[m.group(2)]


def read_input(path, strip_newline=True) -> bytes:
    if path:
        with open(path, 'rb') as f:
            return f.read()
    data = sys.stdin.buffer.read()
    # Terminal input ends with the newline the user typed
    return data.rstrip(b'\r\n') if strip_newline else data


def read_text(path) -> str:
    try:
        return read_input(path).decode('utf-8')
    except UnicodeDecodeError:
        raise CLIError("input is not valid UTF-8")


def load_public_key(args) -> rsa.RSAPublicKey:
    if args.pubkey:
        with open(args.pubkey, 'rb') as f:
            data = f.read()
        key = (serialization.load_pem_public_key(data) if b"-----BEGIN" in data
               else serialization.load_der_public_key(data))
    elif args.kms_key_id:
        key = AWSKMSDecrypter(args.kms_key_id, region_name=args.kms_region).public_key()
    else:
        raise CLIError("either --pubkey or --kms-key-id is required")
    if not isinstance(key, rsa.RSAPublicKey):
        raise CLIError("the wrapping key must be an RSA public key")
    return key


def build_protection(args, placement=()) -> ProtectionParams:
    num_uses = args.num_uses
    if args.create_once:
        num_uses = 1
    if args.no_usage_limit:
        num_uses = 0
    constraints = [c.strip() for c in (args.provider_constraints or "").split(',') if c.strip()]

    return ProtectionParams.from_durations(
        create_within=None if args.no_create_limit else args.create_limit,
        expires_in_days=None if args.no_expiry_limit else args.expires_in_days,
        num_uses=num_uses,
        provider_constraints=constraints,
        placement_constraints=placement,
    )


def _placement(args, target_factory):
    if not args.lock_placement:
        return ()
    try:
        return (target_factory().constraint_uri(),)
    except (TypeError, ValueError) as e:
        raise CLIError(f"cannot lock placement: {e}")


def _require(args, *names):
    missing = [n for n in names if not getattr(args, n)]
    if missing:
        raise CLIError("--lock-placement requires " + ", ".join("--" + n.replace('_', '-') for n in missing))


def _keyvault_target(args, kind):
    def factory():
        _require(args, "vault", "name")
        return KeyVaultObjectTarget(args.vault, kind, args.name)
    return factory


def payload_password(args):
    if args.lock_placement:
        raise CLIError("passwords have no placement to lock")
    return StringData(read_text(args.input_file)), ()


def payload_secret(args):
    raw = read_input(args.input_file)
    if args.base64:
        try:
            raw = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            raise CLIError("input is not valid base64")
    try:
        value = raw.decode('utf-8')
    except UnicodeDecodeError:
        raise CLIError("secret value is not valid UTF-8")
    return SecretData(value, args.content_type), _placement(args, _keyvault_target(args, "secrets"))


def payload_key(args):
    data = read_input(args.input_file, strip_newline=False)
    try:
        if args.symmetric:
            jwk = jwk_lib.from_symmetric(data)
        else:
            password = args.password.encode('utf-8') if args.password else None
            jwk = jwk_lib.load_private_key(data, password)
    except jwk_lib.InvalidJWK as e:
        raise CLIError(str(e))
    return KeyData(jwk), _placement(args, _keyvault_target(args, "keys"))


def payload_certificate(args):
    data = read_input(args.input_file, strip_newline=False)
    fmt = PKCS12_FORMAT if args.format == "pkcs12" else PEM_FORMAT
    cert = CertificateData(data, fmt, args.password or "")
    return cert, _placement(args, _keyvault_target(args, "certificates"))


def _apim_args(args, *extra):
    _require(args, "az_subscription", "resource_group", "service", *extra)


def payload_named_value(args):
    def factory():
        _apim_args(args, "name")
        return NamedValueTarget(args.az_subscription, args.resource_group, args.service, args.name)
    return NamedValueData(read_text(args.input_file)), _placement(args, factory)


def payload_subscription(args):
    def factory():
        _apim_args(args)
        return SubscriptionTarget(args.az_subscription, args.resource_group, args.service,
                                  args.subscription_id or "", args.api or "", args.product or "",
                                  args.user or "")
    with open(args.primary_file, 'rb') as f:
        primary = f.read().decode('utf-8').rstrip('\r\n')
    with open(args.secondary_file, 'rb') as f:
        secondary = f.read().decode('utf-8').rstrip('\r\n')
    return SubscriptionKeys(primary, secondary), _placement(args, factory)


def payload_content(args):
    if args.lock_placement:
        raise CLIError("content has no placement to lock")
    return ContentData(read_text(args.input_file)), ()


def _add_apim_flags(p):
    p.add_argument('--az-subscription', help='Azure subscription holding the API management service')
    p.add_argument('--resource-group', help='Resource group of the API management service')
    p.add_argument('--service', help='API management service name')


def build_parser() -> argparse.ArgumentParser:
    base = argparse.ArgumentParser(add_help=False)
    base.add_argument('--wrapping-key-vault', default='', help='Vault containing the wrapping key')
    base.add_argument('--wrapping-key-name', default='', help='Wrapping key name')
    base.add_argument('--wrapping-key-version', default='', help='Wrapping key version')
    base.add_argument('--pubkey', help='RSA public key (PEM or DER) used to wrap the session key')
    base.add_argument('--kms-key-id', help='Fetch the wrapping public key from this KMS key instead')
    base.add_argument('--kms-region', help='Region of the KMS key')
    base.add_argument('--provider-constraints', help='Comma-separated provider labels the consumer must carry')
    base.add_argument('--lock-placement', action='store_true',
                      help='Only allow the destination described by the sub-command options')
    base.add_argument('--create-limit', type=parse_duration, default=parse_duration(DEFAULT_CREATE_LIMIT),
                      help='Time within which the first use must happen (default 72h)')
    base.add_argument('--no-create-limit', action='store_true', help='Remove the create limit')
    base.add_argument('--expires-in-days', type=int, default=DEFAULT_EXPIRY_DAYS,
                      help='Days the ciphertext remains valid (default 365)')
    base.add_argument('--no-expiry-limit', action='store_true', help='Remove the expiry date')
    base.add_argument('--num-uses', type=int, default=DEFAULT_NUM_USES,
                      help='Number of times the ciphertext may be used (default 10, 0 = unlimited)')
    base.add_argument('--create-once', action='store_true', help='Shortcut for --num-uses 1')
    base.add_argument('--no-usage-limit', action='store_true', help='Remove the limit on uses')
    base.add_argument('--output', help='Write the envelope here instead of stdout')
    base.add_argument('--log-level', default='WARNING')

    p = argparse.ArgumentParser(prog='confidential-envelope', description=__doc__)
    sub = p.add_subparsers(dest='command', required=True)

    s = sub.add_parser('password', parents=[base], help='Opaque password string')
    s.add_argument('--input-file')
    s.set_defaults(build=payload_password)

    s = sub.add_parser('secret', parents=[base], help='Key vault secret')
    s.add_argument('--input-file')
    s.add_argument('--base64', action='store_true', help='Input is base64 encoded')
    s.add_argument('--content-type')
    s.add_argument('--vault', help='Destination vault')
    s.add_argument('--name', help='Destination secret name')
    s.set_defaults(build=payload_secret)

    s = sub.add_parser('key', parents=[base], help='Key vault key (PEM/DER private key or raw symmetric key)')
    s.add_argument('--input-file')
    s.add_argument('--password', help='Password of an encrypted private key')
    s.add_argument('--symmetric', action='store_true', help='Input is raw symmetric key material')
    s.add_argument('--vault', help='Destination vault')
    s.add_argument('--name', help='Destination key name')
    s.set_defaults(build=payload_key)

    s = sub.add_parser('certificate', parents=[base], help='Key vault certificate')
    s.add_argument('--input-file')
    s.add_argument('--format', choices=('pem', 'pkcs12'), default='pem')
    s.add_argument('--password', help='Password of the private key or PKCS#12 bundle')
    s.add_argument('--vault', help='Destination vault')
    s.add_argument('--name', help='Destination certificate name')
    s.set_defaults(build=payload_certificate)

    s = sub.add_parser('named-value', parents=[base], help='API management named value')
    s.add_argument('--input-file')
    _add_apim_flags(s)
    s.add_argument('--name', help='Named value name')
    s.set_defaults(build=payload_named_value)

    s = sub.add_parser('subscription', parents=[base], help='API management subscription keys')
    s.add_argument('--primary-file', required=True)
    s.add_argument('--secondary-file', required=True)
    _add_apim_flags(s)
    s.add_argument('--subscription-id')
    s.add_argument('--api')
    s.add_argument('--product')
    s.add_argument('--user')
    s.set_defaults(build=payload_subscription)

    s = sub.add_parser('content', parents=[base], help='General content for data sources')
    s.add_argument('--input-file')
    s.set_defaults(build=payload_content)
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_json_logging(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    try:
        payload, placement = args.build(args)
        hint = WrappingKeyCoordinate(args.wrapping_key_vault, args.wrapping_key_name,
                                     args.wrapping_key_version, WRAPPING_ALGORITHM)
        armored = ConfidentialProducer().encrypt(
            payload, build_protection(args, placement), hint, load_public_key(args))
    except (CLIError, ConfidentialError, OSError, ValueError, RuntimeError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.output:
        with open(args.output, 'w') as f:
            f.write(armored)
    else:
        sys.stdout.write(armored)
    return 0


if __name__ == '__main__':
    sys.exit(main())
