import io
import sys
from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from conftest import FakeClock
from confidential import cli
from confidential.consumer import decrypt
from confidential.crypto import jwk as jwk_lib
from confidential.crypto.envelope import consume
from confidential.errors import ErrorKind
from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.models.header import SECONDS_PER_DAY
from confidential.models.payloads import KeyData, SecretData, StringData, SubscriptionKeys
from confidential.policy.constraints import MatchMode
from confidential.policy.placement import KeyVaultObjectTarget
from confidential.tracker.memory import InMemoryTracker


@pytest.fixture
def pubkey_file(tmp_path, wrapping_key):
    path = tmp_path / "wrap.pub.pem"
    path.write_bytes(wrapping_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo))
    return str(path)


def _run(tmp_path, *argv):
    out = tmp_path / "envelope.txt"
    assert cli.main([*argv, "--output", str(out)]) == 0
    return out.read_text()


def _open(armored, wrapping_key, clock=None, **kwargs):
    kwargs.setdefault("match", MatchMode.NONE)
    return decrypt(armored, wrapping_key, target=kwargs.pop("target", None),
                   provider_constraints=kwargs.pop("provider_constraints", ()),
                   tracker=kwargs.pop("tracker", InMemoryTracker()), clock=clock or FakeClock(), **kwargs)


def test_parse_duration():
    assert cli.parse_duration("90") == 90
    assert cli.parse_duration("30m") == 1800
    assert cli.parse_duration("72h") == 72 * 3600
    assert cli.parse_duration("3d") == 3 * SECONDS_PER_DAY
    with pytest.raises(Exception):
        cli.parse_duration("soon")


def test_password_defaults(tmp_path, wrapping_key, pubkey_file):
    secret = tmp_path / "pw.txt"
    secret.write_text("hunter2\n")
    armored = _run(tmp_path, "password", "--pubkey", pubkey_file, "--input-file", str(secret),
                   "--wrapping-key-vault", "vault", "--wrapping-key-name", "key")

    result = _open(armored, wrapping_key)
    assert result.ok
    # only stdin input is stripped of its trailing newline
    assert result.payload == StringData("hunter2\n")
    header = result.header
    assert header.num_uses == 10
    assert header.create_limit > 0
    assert header.expiry - header.create_limit == 365 * SECONDS_PER_DAY - 72 * 3600


def test_password_from_stdin(tmp_path, wrapping_key, pubkey_file, monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(b"from-stdin\n")))
    armored = _run(tmp_path, "password", "--pubkey", pubkey_file, "--no-usage-limit",
                   "--no-create-limit", "--no-expiry-limit")
    result = _open(armored, wrapping_key)
    assert result.payload == StringData("from-stdin")
    assert (result.header.num_uses, result.header.create_limit, result.header.expiry) == (0, 0, 0)


def test_secret_with_locked_placement(tmp_path, wrapping_key, pubkey_file):
    secret = tmp_path / "secret.b64"
    secret.write_text("czNjcjN0")
    armored = _run(tmp_path, "secret", "--pubkey", pubkey_file, "--input-file", str(secret), "--base64",
                   "--content-type", "text/plain", "--vault", "Team-Vault", "--name", "db",
                   "--lock-placement", "--create-once", "--provider-constraints", "prod, eu")

    result = _open(armored, wrapping_key, match=MatchMode.TARGET,
                   target=KeyVaultObjectTarget("team-vault", "secrets", "db"))
    assert result.ok
    assert result.payload == SecretData("s3cr3t", "text/plain")
    assert result.header.num_uses == 1
    assert result.header.provider_constraints == frozenset({"prod", "eu"})


def test_lock_placement_needs_destination(tmp_path, pubkey_file, capsys):
    secret = tmp_path / "secret.txt"
    secret.write_text("x")
    code = cli.main(["secret", "--pubkey", pubkey_file, "--input-file", str(secret), "--lock-placement"])
    assert code == 1
    assert "--vault" in capsys.readouterr().err


@pytest.mark.parametrize("make_key", [
    lambda: ec.generate_private_key(ec.SECP256R1()),
    lambda: rsa.generate_private_key(public_exponent=65537, key_size=2048),
], ids=["ec", "rsa"])
@pytest.mark.parametrize("encoding", [serialization.Encoding.PEM, serialization.Encoding.DER])
def test_private_key_becomes_jwk(tmp_path, wrapping_key, pubkey_file, make_key, encoding):
    key = make_key()
    key_file = tmp_path / "key.bin"
    key_file.write_bytes(key.private_bytes(encoding, serialization.PrivateFormat.PKCS8,
                                           serialization.BestAvailableEncryption(b"pw")))
    armored = _run(tmp_path, "key", "--pubkey", pubkey_file, "--input-file", str(key_file), "--password", "pw")
    result = _open(armored, wrapping_key)
    assert result.payload == KeyData(jwk_lib.from_key(key))


def test_subscription_keys(tmp_path, wrapping_key, pubkey_file):
    primary = tmp_path / "p.txt"
    secondary = tmp_path / "s.txt"
    primary.write_text("a\n")
    secondary.write_text("b\n")
    armored = _run(tmp_path, "subscription", "--pubkey", pubkey_file,
                   "--primary-file", str(primary), "--secondary-file", str(secondary),
                   "--az-subscription", "S", "--resource-group", "G", "--service", "V",
                   "--api", "X", "--user", "U", "--lock-placement")
    result = _open(armored, wrapping_key)
    assert result.payload == SubscriptionKeys("a", "b")
    assert result.header.placement_constraints == (
        "az-c-label:///subscriptions/S/resourceGroups/G/providers/Microsoft.ApiManagement"
        "/service/v/subscriptions/?api=X/product=/user=U",)


def test_kms_public_key(tmp_path, wrapping_key):
    der = wrapping_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    mock_client = MagicMock()
    mock_client.get_public_key.return_value = {'PublicKey': der}
    content = tmp_path / "content.txt"
    content.write_text("data source content")

    with patch('boto3.client', return_value=mock_client):
        armored = _run(tmp_path, "content", "--kms-key-id", "alias/wrapping", "--input-file", str(content))
    mock_client.get_public_key.assert_called_once_with(KeyId='alias/wrapping')
    assert _open(armored, wrapping_key).ok


def test_missing_wrapping_key(tmp_path, capsys):
    content = tmp_path / "content.txt"
    content.write_text("x")
    assert cli.main(["content", "--input-file", str(content)]) == 1
    assert "--pubkey" in capsys.readouterr().err


def test_expired_envelope_from_cli(tmp_path, wrapping_key, pubkey_file):
    content = tmp_path / "content.txt"
    content.write_text("x")
    armored = _run(tmp_path, "content", "--pubkey", pubkey_file, "--input-file", str(content),
                   "--no-create-limit", "--expires-in-days", "1")
    later = FakeClock(10 ** 12)
    assert _open(armored, wrapping_key, clock=later).error_kind == ErrorKind.EXPIRED


def test_wrapping_key_alias_in_hint(tmp_path, wrapping_key, pubkey_file):
    content = tmp_path / "content.txt"
    content.write_text("x")
    armored = _run(tmp_path, "content", "--pubkey", pubkey_file, "--input-file", str(content),
                   "--wrapping-key-vault", "us-east-1", "--wrapping-key-name", "alias/wrapping")

    hint = consume(armored, wrapping_key).hint
    assert hint == "us-east-1/alias%2Fwrapping//RSA-OAEP-256"
    assert WrappingKeyCoordinate.from_hint(hint).key_name == "alias/wrapping"
