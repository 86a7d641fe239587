"""Error taxonomy shared by the engine, registry, memory and identity layers.

Every error carries a stable ``kind`` code. Failed tasks record that code
together with the error detail so callers can tell a schema problem from a
runaway loop without parsing messages.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class TesseraError(RuntimeError):
    """Base class for runtime errors with a machine-readable kind."""

    kind: str = "Internal"
    retryable: bool = False

    def __init__(self, detail: str = "", *, data: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind
        self.data: dict[str, Any] = dict(data or {})


class InvalidInput(TesseraError):
    """Submission rejected: empty input or unknown agent."""

    kind = "InvalidInput"


class SchemaViolation(TesseraError):
    """Capability payload does not match its declared schema."""

    kind = "SchemaViolation"


class TransientCapabilityFailure(TesseraError):
    """Network or timeout class failure; eligible for retry."""

    kind = "TransientCapabilityFailure"
    retryable = True


class CapabilityFailure(TesseraError):
    """Capability raised a non-transient error."""

    kind = "CapabilityFailure"


class CapabilityNotFound(TesseraError):
    kind = "NotFound"


class DuplicateCapability(TesseraError):
    kind = "DuplicateCapability"


class DelegationCycle(TesseraError):
    kind = "DelegationCycle"


class DelegationDepthExceeded(TesseraError):
    kind = "DelegationDepthExceeded"


class StepLimitExceeded(TesseraError):
    kind = "StepLimitExceeded"


class AttestationUnavailable(TesseraError):
    kind = "AttestationUnavailable"


class KeyUnavailable(TesseraError):
    """No signing key can be produced for the requested agent."""

    kind = "KeyUnavailable"


class EngineSaturated(TesseraError):
    """Admission control rejected a submission; retry later."""

    kind = "EngineSaturated"
    retryable = True


class TaskNotFound(TesseraError):
    kind = "TaskNotFound"


class TaskCancelled(TesseraError):
    kind = "TaskCancelled"


class DeadlineExceeded(TesseraError):
    kind = "DeadlineExceeded"


class ModelGatewayFailure(TesseraError):
    kind = "ModelGatewayFailure"


class TaskNotFinished(TesseraError):
    """Result requested for a task that has not reached a terminal state."""

    kind = "TaskNotFinished"


class MemoryUnavailable(TesseraError):
    """The memory store could not durably record a completed task."""

    kind = "MemoryUnavailable"


class SignatureInvalid(TesseraError):
    """A signed request did not carry a valid Ed25519 signature."""

    kind = "SignatureInvalid"


class InvalidTransition(TesseraError):
    """Raised when code attempts a task transition outside the state machine."""

    kind = "InvalidTransition"


__all__ = [
    "AttestationUnavailable",
    "CapabilityFailure",
    "CapabilityNotFound",
    "DeadlineExceeded",
    "DelegationCycle",
    "DelegationDepthExceeded",
    "DuplicateCapability",
    "EngineSaturated",
    "InvalidInput",
    "InvalidTransition",
    "KeyUnavailable",
    "MemoryUnavailable",
    "ModelGatewayFailure",
    "SchemaViolation",
    "SignatureInvalid",
    "StepLimitExceeded",
    "TaskCancelled",
    "TaskNotFinished",
    "TaskNotFound",
    "TesseraError",
    "TransientCapabilityFailure",
]
