import os
from unittest.mock import patch

import pytest

from confidential.config import (
    ConfigurationError,
    ConsumerSettings,
    LocalFileTrackerSettings,
    RemoteTableTrackerSettings,
    WrappingKeyDefault,
)
from confidential.crypto.hashing import DEFAULT_MAX_SIZE
from confidential.policy.constraints import MatchMode


def test_defaults():
    settings = ConsumerSettings()
    settings.validate()
    assert settings.require_match == MatchMode.NONE
    assert settings.max_size == DEFAULT_MAX_SIZE
    assert not settings.has_tracker


def test_from_mapping():
    settings = ConsumerSettings.from_mapping({
        "wrapping_key_default": {"vault_name": "vault", "key_name": "key"},
        "disallow_override_wrapping_key": True,
        "provider_constraints": "prod, eu",
        "require_match": "provider",
        "local_file_tracker": {"path": "/var/lib/uses.json.gz"},
    })
    assert settings.wrapping_key_default == WrappingKeyDefault("vault", "key")
    assert settings.provider_constraints == frozenset({"prod", "eu"})
    assert settings.require_match == MatchMode.PROVIDER
    assert settings.local_file_tracker == LocalFileTrackerSettings("/var/lib/uses.json.gz")
    assert settings.has_tracker


@pytest.mark.parametrize("data", [
    {"unknown_setting": 1},
    {"require_match": "sometimes"},
    {"disallow_override_wrapping_key": True},
    {"max_size": 0},
    {"wrapping_key_default": {"vault": "v"}},
    {"wrapping_key_default": 42},
    {"local_file_tracker": {"path": "a"},
     "remote_table_tracker": {"account": "", "table": "t", "partition": "p"}},
    {"remote_table_tracker": {"account": "ops", "table": "", "partition": "p"}},
    {"local_file_tracker": {"file": "a"}},
])
def test_invalid_mappings(data):
    with pytest.raises(ConfigurationError):
        ConsumerSettings.from_mapping(data)


def test_wrapping_key_default_from_hint():
    default = WrappingKeyDefault.from_value("vault/key/v1")
    assert default.to_coordinate().to_hint() == "vault/key/v1/"


def test_from_env_mapping():
    settings = ConsumerSettings.from_env(environ={
        "CONFIDENTIAL_WRAPPING_KEY": "vault/key",
        "CONFIDENTIAL_DISALLOW_OVERRIDE_WRAPPING_KEY": "yes",
        "CONFIDENTIAL_DEFAULT_DESTINATION": "team-vault",
        "CONFIDENTIAL_PROVIDER_CONSTRAINTS": "prod,eu",
        "CONFIDENTIAL_REQUIRE_MATCH": "target",
        "CONFIDENTIAL_TRACKER_TABLE": "uses",
        "CONFIDENTIAL_TRACKER_PARTITION": "prod",
        "CONFIDENTIAL_TRACKER_ACCOUNT": "ops",
        "CONFIDENTIAL_MAX_SIZE": "1048576",
        "CONFIDENTIAL_KMS_REGION": "eu-west-1",
        "UNRELATED": "ignored",
    })
    assert settings.disallow_override_wrapping_key
    assert settings.default_destination == "team-vault"
    assert settings.require_match == MatchMode.TARGET
    assert settings.remote_table_tracker == RemoteTableTrackerSettings("ops", "uses", "prod", None)
    assert settings.max_size == 1048576
    assert settings.kms_region == "eu-west-1"


def test_from_env_bad_integer():
    with pytest.raises(ConfigurationError):
        ConsumerSettings.from_env(environ={"CONFIDENTIAL_MAX_SIZE": "lots"})


def test_from_env_reads_dotenv_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("CONFIDENTIAL_REQUIRE_MATCH=provider\nCONFIDENTIAL_PROVIDER_CONSTRAINTS=prod\n")

    with patch.dict(os.environ):
        for name in [n for n in os.environ if n.startswith("CONFIDENTIAL_")]:
            del os.environ[name]
        settings = ConsumerSettings.from_env(env_file=str(env_file))
    assert settings.require_match == MatchMode.PROVIDER
    assert settings.provider_constraints == frozenset({"prod"})
