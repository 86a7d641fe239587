"""Core value types for the Tessera agent runtime."""

from __future__ import annotations

from tessera.core.types import (
    CapabilityDescriptor,
    CapabilityInvocation,
    CapabilityResult,
    Context,
    ErrorInfo,
    GatewayRequest,
    GatewayResponse,
    MemoryRecord,
    Message,
    Signature,
    TaskOutcome,
    TaskStatus,
    Usage,
)

__all__ = [
    "CapabilityDescriptor",
    "CapabilityInvocation",
    "CapabilityResult",
    "Context",
    "ErrorInfo",
    "GatewayRequest",
    "GatewayResponse",
    "MemoryRecord",
    "Message",
    "Signature",
    "TaskOutcome",
    "TaskStatus",
    "Usage",
]
