import time
import uuid as uuid_lib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from confidential.errors import InvalidProtection, MalformedEnvelope
from confidential.policy.placement import canonicalize_constraint

HEADER_FIELDS = (
    "uuid", "model", "object_type", "create_limit", "expiry", "num_uses",
    "provider_constraints", "placement_constraints",
)

# Older producers wrote provider constraints under this name
LEGACY_LABELS_KEY = "labels"

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400


def _normalise_provider_constraints(values: Iterable[str]) -> FrozenSet[str]:
    values = list(values)
    for v in values:
        if not isinstance(v, str):
            raise TypeError("provider constraints must be strings")
    return frozenset(values)


def _normalise_placement_constraints(values: Iterable[str]) -> Tuple[str, ...]:
    out = []
    for v in values:
        if not isinstance(v, str):
            raise TypeError("placement constraints must be strings")
        out.append(canonicalize_constraint(v))
    return tuple(out)


@dataclass(frozen=True)
class ProtectionParams:
    """What the producer imprints on a ciphertext besides the payload itself."""
    create_limit: int = 0
    expiry: int = 0
    num_uses: int = 0
    provider_constraints: FrozenSet[str] = frozenset()
    placement_constraints: Tuple[str, ...] = ()
    object_type: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'provider_constraints',
                           _normalise_provider_constraints(self.provider_constraints))
        object.__setattr__(self, 'placement_constraints',
                           _normalise_placement_constraints(self.placement_constraints))

    def validate(self):
        for name in ("create_limit", "expiry", "num_uses"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidProtection(f"{name} must be an integer")
            if value < 0:
                raise InvalidProtection(f"{name} must not be negative")
        if self.create_limit and self.expiry and self.expiry < self.create_limit:
            raise InvalidProtection("expiry must not precede the create limit")
        for c in self.provider_constraints:
            if not c:
                raise InvalidProtection("provider constraints must not be empty strings")

    @classmethod
    def from_durations(
        cls,
        create_within: Optional[float] = None,
        expires_in_days: Optional[float] = None,
        num_uses: int = 0,
        provider_constraints: Iterable[str] = (),
        placement_constraints: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> "ProtectionParams":
        """Turn relative limits (seconds for the create window, days for expiry) into Unix seconds."""
        now = int(clock())
        create_limit = now + int(create_within) if create_within else 0
        expiry = now + int(expires_in_days * SECONDS_PER_DAY) if expires_in_days else 0
        return cls(
            create_limit=create_limit,
            expiry=expiry,
            num_uses=num_uses,
            provider_constraints=frozenset(provider_constraints),
            placement_constraints=tuple(placement_constraints),
        )


@dataclass(frozen=True)
class ConfidentialHeader:
    uuid: str
    model: str
    object_type: str
    create_limit: int = 0
    expiry: int = 0
    num_uses: int = 0
    provider_constraints: FrozenSet[str] = field(default_factory=frozenset)
    placement_constraints: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'provider_constraints',
                           _normalise_provider_constraints(self.provider_constraints))
        object.__setattr__(self, 'placement_constraints',
                           _normalise_placement_constraints(self.placement_constraints))

    @classmethod
    def new(cls, model: str, object_type: str, protection: ProtectionParams) -> "ConfidentialHeader":
        return cls(
            uuid=str(uuid_lib.uuid4()),
            model=model,
            object_type=protection.object_type or object_type,
            create_limit=protection.create_limit,
            expiry=protection.expiry,
            num_uses=protection.num_uses,
            provider_constraints=protection.provider_constraints,
            placement_constraints=protection.placement_constraints,
        )

    def validate(self):
        try:
            uuid_lib.UUID(self.uuid)
        except (ValueError, AttributeError, TypeError):
            raise MalformedEnvelope("header uuid is not a UUID")
        if not self.model:
            raise MalformedEnvelope("header carries no model")
        for name in ("create_limit", "expiry", "num_uses"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise MalformedEnvelope(f"header {name} must be a non-negative integer")
        if self.create_limit and self.expiry and self.expiry < self.create_limit:
            raise MalformedEnvelope("header expiry precedes its create limit")

    def to_json(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "model": self.model,
            "object_type": self.object_type,
            "create_limit": self.create_limit,
            "expiry": self.expiry,
            "num_uses": self.num_uses,
            "provider_constraints": sorted(self.provider_constraints),
            "placement_constraints": list(self.placement_constraints),
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ConfidentialHeader":
        if not isinstance(data, Mapping):
            raise MalformedEnvelope("header is not an object")
        data = dict(data)
        if LEGACY_LABELS_KEY in data:
            if "provider_constraints" in data:
                raise MalformedEnvelope("header carries both labels and provider constraints")
            data["provider_constraints"] = data.pop(LEGACY_LABELS_KEY)

        unknown = set(data) - set(HEADER_FIELDS)
        if unknown:
            raise MalformedEnvelope(f"unknown header fields: {', '.join(sorted(unknown))}")
        for required in ("uuid", "model", "object_type"):
            if not isinstance(data.get(required), str):
                raise MalformedEnvelope(f"header field {required} is missing")

        provider = data.get("provider_constraints") or []
        placement = data.get("placement_constraints") or []
        if not isinstance(provider, list) or not isinstance(placement, list):
            raise MalformedEnvelope("header constraints must be lists")

        try:
            header = cls(
                uuid=data["uuid"],
                model=data["model"],
                object_type=data["object_type"],
                create_limit=data.get("create_limit", 0),
                expiry=data.get("expiry", 0),
                num_uses=data.get("num_uses", 0),
                provider_constraints=frozenset(provider),
                placement_constraints=tuple(placement),
            )
        except TypeError as e:
            raise MalformedEnvelope(f"invalid header: {e}")
        header.validate()
        return header
