"""
Shared choreography for resources provisioned from confidential envelopes:
check placement, decrypt, provision. The use is committed inside the
consumer before the payload ever reaches the capability.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from confidential.consumer import ConfidentialConsumer, Diagnostic
from confidential.errors import ProvisioningFailed
from confidential.policy.placement import PlacementTarget
from confidential.security.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ResourceCapability(ABC):
    """Narrow adapter to the cloud API holding one kind of object."""

    @abstractmethod
    def convert_to_target(self, resource: Any) -> Optional[PlacementTarget]:
        """Placement target the resource will write to (None for pure data sources)."""

    @abstractmethod
    def read(self, resource: Any) -> Any:
        pass

    @abstractmethod
    def create(self, resource: Any, payload: Any) -> Any:
        pass

    @abstractmethod
    def update(self, resource: Any, payload: Any) -> Any:
        pass

    @abstractmethod
    def delete(self, resource: Any) -> None:
        pass


@dataclass
class Provisioned:
    value: Any
    warnings: List[Diagnostic] = field(default_factory=list)


PipelineResult = Tuple[bool, Union[Provisioned, Any, List[Diagnostic]]]


def _failure(message: str) -> List[Diagnostic]:
    error = ProvisioningFailed(message)
    return [Diagnostic(error.kind, error.severity, f"{error.user_message}: {message}")]


class ConfidentialResourcePipeline:

    def __init__(self, consumer: ConfidentialConsumer, capability: ResourceCapability,
                 expected_model: Optional[str] = None):
        self.consumer = consumer
        self.capability = capability
        self.expected_model = expected_model

    def _provision(self, operation: str, resource: Any, armored: str,
                   cancellation: Optional[CancellationToken]) -> PipelineResult:
        try:
            target = self.capability.convert_to_target(resource)
        except ValueError as e:
            return False, _failure(f"invalid destination: {e}")

        result = self.consumer.decrypt(armored, target=target, expected_model=self.expected_model,
                                       cancellation=cancellation)
        if not result.ok:
            return False, result.diagnostics

        try:
            value = getattr(self.capability, operation)(resource, result.payload)
        except Exception as e:
            # The use is already recorded; the caller decides whether to retry with a new envelope
            logger.error("Provisioning failed", extra={'envelope_uuid': result.envelope_uuid})
            return False, _failure(f"{operation} failed ({type(e).__name__})")
        finally:
            result.payload = None
        return True, Provisioned(value, result.warnings)

    def create(self, resource: Any, armored: str,
               cancellation: Optional[CancellationToken] = None) -> PipelineResult:
        return self._provision("create", resource, armored, cancellation)

    def update(self, resource: Any, armored: str,
               cancellation: Optional[CancellationToken] = None) -> PipelineResult:
        return self._provision("update", resource, armored, cancellation)

    def read(self, resource: Any) -> PipelineResult:
        try:
            return True, self.capability.read(resource)
        except Exception as e:
            return False, _failure(f"read failed ({type(e).__name__})")

    def delete(self, resource: Any) -> PipelineResult:
        try:
            self.capability.delete(resource)
        except Exception as e:
            return False, _failure(f"delete failed ({type(e).__name__})")
        return True, None
