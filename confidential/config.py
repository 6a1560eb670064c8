import os
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Mapping, Optional

from dotenv import load_dotenv

from confidential.crypto.hashing import DEFAULT_MAX_SIZE
from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.policy.constraints import MatchMode

ENV_PREFIX = "CONFIDENTIAL_"

_TRUE = {"1", "true", "yes", "on"}


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class WrappingKeyDefault:
    vault_name: str = ""
    key_name: str = ""
    key_version: str = ""
    algorithm: str = ""

    def to_coordinate(self) -> WrappingKeyCoordinate:
        return WrappingKeyCoordinate(self.vault_name, self.key_name, self.key_version, self.algorithm)

    @classmethod
    def from_value(cls, value: Any) -> "WrappingKeyDefault":
        """Accepts a mapping of the four fields or a `vault/key/version/algorithm` string."""
        if isinstance(value, str):
            c = WrappingKeyCoordinate.from_hint(value)
            return cls(c.vault_name, c.key_name, c.key_version, c.algorithm)
        if isinstance(value, Mapping):
            unknown = set(value) - {"vault_name", "key_name", "key_version", "algorithm"}
            if unknown:
                raise ConfigurationError(f"Unknown wrapping key fields: {', '.join(sorted(unknown))}")
            return cls(**{k: str(v) for k, v in value.items()})
        raise ConfigurationError("wrapping_key_default must be a mapping or a hint string")


@dataclass(frozen=True)
class LocalFileTrackerSettings:
    path: str


@dataclass(frozen=True)
class RemoteTableTrackerSettings:
    # Named credential profile used to reach the table
    account: str
    table: str
    partition: str
    region: Optional[str] = None


@dataclass(frozen=True)
class ConsumerSettings:
    wrapping_key_default: Optional[WrappingKeyDefault] = None
    disallow_override_wrapping_key: bool = False
    default_destination: Optional[str] = None
    provider_constraints: FrozenSet[str] = field(default_factory=frozenset)
    require_match: MatchMode = MatchMode.NONE
    local_file_tracker: Optional[LocalFileTrackerSettings] = None
    remote_table_tracker: Optional[RemoteTableTrackerSettings] = None
    max_size: int = DEFAULT_MAX_SIZE
    kms_region: Optional[str] = None
    audit_log_path: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'require_match', MatchMode.parse(self.require_match))
        object.__setattr__(self, 'provider_constraints', frozenset(self.provider_constraints))

    def validate(self):
        if self.local_file_tracker and self.remote_table_tracker:
            raise ConfigurationError("local-file and remote-table trackers are mutually exclusive")
        if self.disallow_override_wrapping_key and self.wrapping_key_default is None:
            raise ConfigurationError("disallow_override_wrapping_key requires wrapping_key_default")
        if self.max_size <= 0:
            raise ConfigurationError("max_size must be positive")
        if self.remote_table_tracker:
            t = self.remote_table_tracker
            if not (t.table and t.partition):
                raise ConfigurationError("remote-table tracker requires table and partition")
        if self.local_file_tracker and not self.local_file_tracker.path:
            raise ConfigurationError("local-file tracker requires a path")

    @property
    def has_tracker(self) -> bool:
        return self.local_file_tracker is not None or self.remote_table_tracker is not None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConsumerSettings":
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown consumer settings: {', '.join(sorted(unknown))}")

        kwargs = dict(data)
        try:
            if kwargs.get("wrapping_key_default") is not None:
                kwargs["wrapping_key_default"] = WrappingKeyDefault.from_value(kwargs["wrapping_key_default"])
            if isinstance(kwargs.get("local_file_tracker"), Mapping):
                kwargs["local_file_tracker"] = LocalFileTrackerSettings(**kwargs["local_file_tracker"])
            if isinstance(kwargs.get("remote_table_tracker"), Mapping):
                kwargs["remote_table_tracker"] = RemoteTableTrackerSettings(**kwargs["remote_table_tracker"])
            if isinstance(kwargs.get("provider_constraints"), str):
                kwargs["provider_constraints"] = _split_list(kwargs["provider_constraints"])
            settings = cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e))
        settings.validate()
        return settings

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> "ConsumerSettings":
        """Build settings from CONFIDENTIAL_* variables, loading a .env file first."""
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        def get(name: str) -> Optional[str]:
            value = environ.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        data: dict = {}
        if get("WRAPPING_KEY"):
            data["wrapping_key_default"] = get("WRAPPING_KEY")
        if get("DISALLOW_OVERRIDE_WRAPPING_KEY"):
            data["disallow_override_wrapping_key"] = get("DISALLOW_OVERRIDE_WRAPPING_KEY").lower() in _TRUE
        if get("DEFAULT_DESTINATION"):
            data["default_destination"] = get("DEFAULT_DESTINATION")
        if get("PROVIDER_CONSTRAINTS"):
            data["provider_constraints"] = get("PROVIDER_CONSTRAINTS")
        if get("REQUIRE_MATCH"):
            data["require_match"] = get("REQUIRE_MATCH")
        if get("TRACKER_FILE"):
            data["local_file_tracker"] = {"path": get("TRACKER_FILE")}
        if get("TRACKER_TABLE"):
            data["remote_table_tracker"] = {
                "account": get("TRACKER_ACCOUNT") or "",
                "table": get("TRACKER_TABLE"),
                "partition": get("TRACKER_PARTITION") or "",
                "region": get("TRACKER_REGION"),
            }
        if get("MAX_SIZE"):
            try:
                data["max_size"] = int(get("MAX_SIZE"))
            except ValueError:
                raise ConfigurationError(f"{ENV_PREFIX}MAX_SIZE must be an integer")
        if get("KMS_REGION"):
            data["kms_region"] = get("KMS_REGION")
        if get("AUDIT_LOG"):
            data["audit_log_path"] = get("AUDIT_LOG")
        return cls.from_mapping(data)


def _split_list(value: str) -> FrozenSet[str]:
    return frozenset(v.strip() for v in value.split(',') if v.strip())
