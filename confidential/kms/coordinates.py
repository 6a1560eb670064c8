from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import quote, unquote

from confidential.crypto.engine import WRAPPING_ALGORITHM

HINT_SEPARATOR = "/"
_FIELDS = ("vault_name", "key_name", "key_version", "algorithm")


@dataclass(frozen=True)
class WrappingKeyCoordinate:
    """Address of the wrapping key: vault, key, version and unwrap algorithm.

    Serialised into the envelope as the (untrusted, AAD-bound) hint
    `vault/key/version/algorithm`, each segment percent-encoded so KMS
    aliases and ARNs survive. Empty segments are allowed and filled from the
    consumer's default.
    """
    vault_name: str = ""
    key_name: str = ""
    key_version: str = ""
    algorithm: str = ""

    @classmethod
    def from_hint(cls, hint: str) -> "WrappingKeyCoordinate":
        parts = hint.split(HINT_SEPARATOR) if hint else []
        if len(parts) > len(_FIELDS):
            raise ValueError("Wrapping key hint has too many segments")
        parts += [""] * (len(_FIELDS) - len(parts))
        return cls(*(unquote(p) for p in parts))

    def to_hint(self) -> str:
        return HINT_SEPARATOR.join(quote(getattr(self, name), safe="") for name in _FIELDS)

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in _FIELDS)

    def addresses_key(self) -> bool:
        return bool(self.vault_name) and bool(self.key_name)

    def get_algorithm(self) -> str:
        return self.algorithm or WRAPPING_ALGORITHM

    def merged_with(self, default: Optional["WrappingKeyCoordinate"]) -> "WrappingKeyCoordinate":
        """Fill the segments this coordinate leaves empty from the default."""
        if default is None:
            return self
        return replace(self, **{
            name: getattr(self, name) or getattr(default, name) for name in _FIELDS
        })

    def overrides(self, default: "WrappingKeyCoordinate") -> bool:
        """True when any segment set here contradicts a segment set in the default."""
        for name in _FIELDS:
            mine, theirs = getattr(self, name), getattr(default, name)
            if name == "algorithm":
                mine, theirs = self.get_algorithm(), default.get_algorithm()
            if mine and theirs and mine != theirs:
                return True
        return False

    def cache_key(self) -> str:
        return HINT_SEPARATOR.join(quote(v, safe="") for v in (self.vault_name, self.key_name, self.key_version))

    def validate(self):
        if not self.addresses_key():
            missing = []
            if not self.vault_name:
                missing.append("vault name")
            if not self.key_name:
                missing.append("key name")
            raise ValueError(
                "Incomplete wrapping key address: at least vault name and key name are required "
                f"(missing {', '.join(missing)})"
            )
