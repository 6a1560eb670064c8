"""
Consumer side of the envelope.

`decrypt` opens an envelope, parses the typed payload, enforces every
protection constraint and commits the use before returning the payload.
It never raises: each failure comes back as a Diagnostic on a REJECTED
result, and the decrypted record buffer is wiped on every path.

States per envelope:

    RECEIVED -> DECRYPTED -> USE_CHECKED -> COMMITTING -> RELEASED
    any failure -> REJECTED
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Union

from confidential.audit.logger import AuditLogger, EventType
from confidential.config import ConsumerSettings
from confidential.crypto.envelope import EnvelopeCodec, dearmor, unpack_body
from confidential.crypto.hashing import DEFAULT_MAX_SIZE
from confidential.errors import (
    ConfidentialError,
    ErrorKind,
    MalformedEnvelope,
    Severity,
    USER_MESSAGES,
    WrappingDecryptFailed,
    WrappingKeyOverrideDisallowed,
)
from confidential.helpers.registry import helper_for_model
from confidential.kms.aws_kms import AWSKMSDecrypter
from confidential.kms.cache import DecrypterFactory, WrappingKeyClientCache
from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.kms.provider import DecrypterLike, RSADecrypter
from confidential.models.header import ConfidentialHeader
from confidential.models.record import decode_record
from confidential.policy.constraints import ConstraintEngine, MatchMode
from confidential.policy.placement import PlacementTarget
from confidential.security.cancellation import CancellationToken, check
from confidential.tracker.base import UseTracker
from confidential.tracker.factory import tracker_from_settings

logger = logging.getLogger(__name__)


class EnvelopeState(str, Enum):
    RECEIVED = "received"
    DECRYPTED = "decrypted"
    USE_CHECKED = "use_checked"
    COMMITTING = "committing"
    RELEASED = "released"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Diagnostic:
    kind: ErrorKind
    severity: Severity
    message: str

    @classmethod
    def from_error(cls, error: ConfidentialError) -> "Diagnostic":
        return cls(error.kind, error.severity, error.user_message)

    @classmethod
    def internal(cls) -> "Diagnostic":
        return cls(ErrorKind.INTERNAL_ERROR, Severity.FATAL, USER_MESSAGES[ErrorKind.INTERNAL_ERROR])


@dataclass
class ConsumeResult:
    payload: Any
    header: Optional[ConfidentialHeader]
    diagnostics: List[Diagnostic] = field(default_factory=list)
    state: EnvelopeState = EnvelopeState.RECEIVED
    envelope_uuid: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == EnvelopeState.RELEASED

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.FATAL]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        errors = self.errors
        return errors[0].kind if errors else None


_codec = EnvelopeCodec()
_engine = ConstraintEngine()


def decrypt(
    armored: Union[str, bytes],
    rsa_decrypt: DecrypterLike,
    target: Optional[PlacementTarget],
    match: Union[MatchMode, str],
    provider_constraints: Iterable[str],
    tracker: Optional[UseTracker],
    clock: Callable[[], float] = time.time,
    cancellation: Optional[CancellationToken] = None,
    expected_model: Optional[str] = None,
    max_size: int = DEFAULT_MAX_SIZE,
) -> ConsumeResult:
    state = EnvelopeState.RECEIVED
    header = None
    record = None
    try:
        match = MatchMode.parse(match)
        provider_constraints = frozenset(provider_constraints)

        parsed = _codec.consume(armored, rsa_decrypt, max_size, cancellation)
        record = parsed.record
        header, payload_bytes = decode_record(record.buffer, max_size)
        helper = helper_for_model(expected_model or header.model)
        payload = helper.parse(header, payload_bytes)
        state = EnvelopeState.DECRYPTED

        evaluation = _engine.check_usage(header, tracker, clock, cancellation)
        state = EnvelopeState.USE_CHECKED

        _engine.check_match(header, target, match, provider_constraints)
        state = EnvelopeState.COMMITTING

        check(cancellation)
        _engine.commit(header, evaluation, tracker, cancellation)
        state = EnvelopeState.RELEASED

        for warning in evaluation.warnings:
            logger.warning(warning.user_message, extra={
                'envelope_uuid': header.uuid, 'kind': warning.kind.value})
        return ConsumeResult(
            payload=payload,
            header=header,
            diagnostics=[Diagnostic.from_error(w) for w in evaluation.warnings],
            state=state,
            envelope_uuid=header.uuid,
        )
    except ConfidentialError as e:
        diagnostic = Diagnostic.from_error(e)
        logger.warning("Envelope rejected", extra={
            'envelope_uuid': header.uuid if header else None,
            'kind': e.kind.value,
            'state': state.value,
        })
    except Exception:
        diagnostic = Diagnostic.internal()
        logger.exception("Unexpected failure while consuming envelope", extra={'state': state.value})
    finally:
        if record is not None:
            record.wipe()

    return ConsumeResult(
        payload=None,
        header=None,
        diagnostics=[diagnostic],
        state=EnvelopeState.REJECTED,
        envelope_uuid=header.uuid if header else None,
    )


class ConfidentialConsumer:
    """
    Consumer bound to one configuration.

    Owns the wrapping-key client cache and the tracker. Safe to call from
    several threads for different envelopes.

    Without a decrypter factory, wrapping keys are AWS KMS keys in
    `settings.kms_region`. Without an audit logger, one is opened on
    `settings.audit_log_path` when set.
    """

    def __init__(
        self,
        settings: ConsumerSettings,
        decrypter_factory: Optional[DecrypterFactory] = None,
        tracker: Optional[UseTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings.validate()
        self.settings = settings
        self.clock = clock
        if audit_logger is None and settings.audit_log_path:
            audit_logger = AuditLogger(settings.audit_log_path)
        self.audit_logger = audit_logger
        self.clients = WrappingKeyClientCache(decrypter_factory or self._kms_decrypter)
        self.tracker = tracker if tracker is not None else tracker_from_settings(settings, clock)
        self.default_coordinate: Optional[WrappingKeyCoordinate] = (
            settings.wrapping_key_default.to_coordinate() if settings.wrapping_key_default else None)

        self.configuration_warnings = self._configuration_warnings()
        for message in self.configuration_warnings:
            logger.warning(message)

    def _kms_decrypter(self, coordinate: WrappingKeyCoordinate) -> RSADecrypter:
        return AWSKMSDecrypter.from_coordinate(coordinate, region_name=self.settings.kms_region)

    def _configuration_warnings(self) -> List[str]:
        warnings = []
        if self.settings.require_match == MatchMode.NONE:
            warnings.append("require_match is 'none': envelopes are released without checking "
                            "provider or placement constraints")
        if self.tracker is None:
            warnings.append("No use tracker configured: envelopes limiting their number of uses "
                            "will be rejected")
        return warnings

    @property
    def provider_constraints(self) -> FrozenSet[str]:
        return self.settings.provider_constraints

    def resolve_decrypter(self, hint: str) -> RSADecrypter:
        try:
            coordinate = WrappingKeyCoordinate.from_hint(hint)
        except ValueError:
            raise MalformedEnvelope("wrapping key hint is malformed")

        default = self.default_coordinate
        if default is not None and self.settings.disallow_override_wrapping_key and coordinate.overrides(default):
            raise WrappingKeyOverrideDisallowed()

        coordinate = coordinate.merged_with(default)
        try:
            coordinate.validate()
        except ValueError as e:
            raise WrappingDecryptFailed(str(e))
        return self.clients.get(coordinate)

    def decrypt(
        self,
        armored: Union[str, bytes],
        target: Optional[PlacementTarget] = None,
        expected_model: Optional[str] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> ConsumeResult:
        max_size = self.settings.max_size
        try:
            hint = unpack_body(dearmor(armored, max_size), max_size).hint_text()
            decrypter = self.resolve_decrypter(hint)
        except ConfidentialError as e:
            logger.warning("Envelope rejected", extra={'kind': e.kind.value, 'state': EnvelopeState.RECEIVED.value})
            result = ConsumeResult(None, None, [Diagnostic.from_error(e)], EnvelopeState.REJECTED)
            self._audit(result)
            return result

        if target is not None:
            target = target.resolved(self.settings.default_destination)

        result = decrypt(
            armored,
            decrypter,
            target=target,
            match=self.settings.require_match,
            provider_constraints=self.settings.provider_constraints,
            tracker=self.tracker,
            clock=self.clock,
            cancellation=cancellation,
            expected_model=expected_model,
            max_size=max_size,
        )
        self._audit(result)
        return result

    def _audit(self, result: ConsumeResult):
        if self.audit_logger is None:
            return
        if result.ok:
            details = {"envelope_uuid": result.envelope_uuid, "model": result.header.model}
            self.audit_logger.log_event(EventType.ENVELOPE_RELEASED, actor="consumer", details=details)
            if result.header.num_uses > 0:
                self.audit_logger.log_event(EventType.TRACKER_RECORDED, actor="consumer", details=details)
        else:
            self.audit_logger.log_event(
                EventType.ENVELOPE_REJECTED,
                actor="consumer",
                details={"envelope_uuid": result.envelope_uuid, "kind": result.error_kind.value},
                severity="WARNING",
            )
