"""
Error taxonomy for the confidential envelope.

Every failure surfaced by the consumer carries a kind, a severity and a
user-safe message. Mismatch messages deliberately withhold the embedded
constraints; cryptographic failures never say which byte disagreed.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    MALFORMED_ENVELOPE = "MalformedEnvelope"
    UNSUPPORTED_VERSION = "UnsupportedVersion"
    WRAPPING_DECRYPT_FAILED = "WrappingDecryptFailed"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    SIZE_LIMIT_EXCEEDED = "SizeLimitExceeded"
    MODEL_MISMATCH = "ModelMismatch"
    EXPIRED = "Expired"
    EXPIRED_CREATE_WINDOW = "ExpiredCreateWindow"
    USES_EXHAUSTED = "UsesExhausted"
    USES_NEARLY_EXHAUSTED = "UsesNearlyExhausted"
    TRACKER_REQUIRED = "TrackerRequired"
    TRACKER_READ_FAILED = "TrackerReadFailed"
    TRACKER_WRITE_FAILED = "TrackerWriteFailed"
    PROVIDER_MISMATCH = "ProviderMismatch"
    PLACEMENT_MISMATCH = "PlacementMismatch"
    WRAPPING_KEY_OVERRIDE_DISALLOWED = "WrappingKeyOverrideDisallowed"
    INVALID_PROTECTION = "InvalidProtection"
    PROVISIONING_FAILED = "ProvisioningFailed"
    CANCELLED = "Cancelled"
    INTERNAL_ERROR = "InternalError"


class Severity(str, Enum):
    FATAL = "fatal"
    WARNING = "warning"


# Messages shown to the practitioner. Mismatch texts are fixed on purpose.
USER_MESSAGES = {
    ErrorKind.MALFORMED_ENVELOPE: "The confidential envelope is malformed",
    ErrorKind.UNSUPPORTED_VERSION: "The confidential envelope uses an unsupported format revision",
    ErrorKind.WRAPPING_DECRYPT_FAILED: "The wrapping key service could not unwrap the session key",
    ErrorKind.AUTHENTICATION_FAILED: "The confidential envelope failed authentication",
    ErrorKind.SIZE_LIMIT_EXCEEDED: "The confidential envelope exceeds the permitted size",
    ErrorKind.MODEL_MISMATCH: "The confidential envelope carries an unexpected payload model",
    ErrorKind.EXPIRED: "The confidential envelope has expired",
    ErrorKind.EXPIRED_CREATE_WINDOW: "The confidential envelope can no longer be used to create new objects",
    ErrorKind.USES_EXHAUSTED: "The confidential envelope has no remaining uses",
    ErrorKind.USES_NEARLY_EXHAUSTED: "The confidential envelope is close to its permitted number of uses",
    ErrorKind.TRACKER_REQUIRED: "The confidential envelope limits its uses, but no use tracker is configured",
    ErrorKind.TRACKER_READ_FAILED: "The use tracker could not be read",
    ErrorKind.TRACKER_WRITE_FAILED: "The use of the confidential envelope could not be recorded",
    ErrorKind.PROVIDER_MISMATCH: "Constraints disallow this placement",
    ErrorKind.PLACEMENT_MISMATCH: "Constraints disallow this placement",
    ErrorKind.WRAPPING_KEY_OVERRIDE_DISALLOWED: "The envelope names a wrapping key that this consumer does not permit",
    ErrorKind.INVALID_PROTECTION: "The protection parameters are invalid",
    ErrorKind.PROVISIONING_FAILED: "The destination object could not be provisioned",
    ErrorKind.CANCELLED: "The operation was cancelled",
    ErrorKind.INTERNAL_ERROR: "The confidential envelope could not be processed",
}


class ConfidentialError(Exception):
    """Base class for every classified envelope failure."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    severity: Severity = Severity.FATAL

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(detail or self.user_message)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]


class MalformedEnvelope(ConfidentialError):
    kind = ErrorKind.MALFORMED_ENVELOPE


class UnsupportedVersion(MalformedEnvelope):
    kind = ErrorKind.UNSUPPORTED_VERSION


class WrappingDecryptFailed(ConfidentialError):
    kind = ErrorKind.WRAPPING_DECRYPT_FAILED


class AuthenticationFailed(ConfidentialError):
    kind = ErrorKind.AUTHENTICATION_FAILED


class SizeLimitExceeded(ConfidentialError):
    kind = ErrorKind.SIZE_LIMIT_EXCEEDED


class ModelMismatch(ConfidentialError):
    kind = ErrorKind.MODEL_MISMATCH

    def __init__(self, expected: str, received: str):
        self.expected = expected
        self.received = received
        super().__init__(f"expected model {expected}, but {received} was received")

    @property
    def user_message(self) -> str:
        return f"{USER_MESSAGES[self.kind]}: expected {self.expected}, received {self.received}"


class Expired(ConfidentialError):
    kind = ErrorKind.EXPIRED


class ExpiredCreateWindow(ConfidentialError):
    kind = ErrorKind.EXPIRED_CREATE_WINDOW


class UsesExhausted(ConfidentialError):
    kind = ErrorKind.USES_EXHAUSTED


class UsesNearlyExhausted(ConfidentialError):
    kind = ErrorKind.USES_NEARLY_EXHAUSTED
    severity = Severity.WARNING


class TrackerRequired(ConfidentialError):
    kind = ErrorKind.TRACKER_REQUIRED


class TrackerReadFailed(ConfidentialError):
    kind = ErrorKind.TRACKER_READ_FAILED


class TrackerWriteFailed(ConfidentialError):
    kind = ErrorKind.TRACKER_WRITE_FAILED


class ProviderMismatch(ConfidentialError):
    kind = ErrorKind.PROVIDER_MISMATCH


class PlacementMismatch(ConfidentialError):
    kind = ErrorKind.PLACEMENT_MISMATCH


class WrappingKeyOverrideDisallowed(ConfidentialError):
    kind = ErrorKind.WRAPPING_KEY_OVERRIDE_DISALLOWED


class InvalidProtection(ConfidentialError, ValueError):
    """Raised to producers whose input violates a protection constraint."""
    kind = ErrorKind.INVALID_PROTECTION

    @property
    def user_message(self) -> str:
        if self.detail:
            return f"{USER_MESSAGES[self.kind]}: {self.detail}"
        return USER_MESSAGES[self.kind]


class Cancelled(ConfidentialError):
    kind = ErrorKind.CANCELLED


class ProvisioningFailed(ConfidentialError):
    kind = ErrorKind.PROVISIONING_FAILED


# Tracker-internal conditions. The consumer maps them onto TrackerRead/WriteFailed.

class TrackerError(Exception):
    """Raised by use-tracker backends."""


class TrackerConflict(TrackerError):
    """Another caller committed a use between our read and our write."""

    def __init__(self, key: str, observed: int, current: int):
        self.key = key
        self.observed = observed
        self.current = current
        super().__init__(f"use count changed concurrently (observed {observed}, found {current})")


class TrackerCorrupted(TrackerError):
    """The store lost or mangled a record; never treated as a reset."""
