"""Core value types for Tessera task execution.

This module defines the foundational data structures exchanged between the
engine and its collaborators:
- Message / Context: the ordered conversation handed to the model gateway
- CapabilityDescriptor / CapabilityInvocation / CapabilityResult: tool and
  sub-agent dispatch
- MemoryRecord: append-only, embeddable record of a completed task
- Signature: attestation of an exact serialized payload
- GatewayRequest / GatewayResponse: model gateway contract
- TaskOutcome: what callers receive once a task is terminal
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TaskStatus(str, Enum):
    """Lifecycle states of a Task."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_CAPABILITY = "awaiting_capability"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


CapabilityKind = Literal["tool", "agent"]
MessageRole = Literal["system", "user", "assistant", "capability_result"]


class Usage(BaseModel):
    """Token accounting accumulated across gateway calls and sub-tasks."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, description="Prompt tokens consumed")
    output_tokens: int = Field(default=0, description="Completion tokens produced")
    requests: int = Field(default=0, description="Number of gateway requests")

    def accumulate(self, other: Optional["Usage"]) -> "Usage":
        if other is None:
            return self
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            requests=self.requests + other.requests,
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CapabilityDescriptor(BaseModel):
    """Declared tool or sub-agent with input/output schemas.

    Schemas are JSON Schema documents. Descriptors are frozen so a registry
    snapshot can be shared across tasks without copying.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique name within a registry")
    kind: CapabilityKind = Field(..., description="tool or agent")
    description: str = Field(default="", description="Human-readable purpose")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object"},
        description="Schema the invocation arguments must satisfy",
    )
    output_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="Schema the capability result payload must satisfy (empty = unchecked)",
    )
    entrypoint: Optional[str] = Field(
        default=None, description="Optional 'module:callable' implementation reference"
    )
    transient_errors: tuple[str, ...] = Field(
        default=(),
        description="Additional exception class names treated as transient",
    )
    endpoint: Optional[str] = Field(
        default=None,
        description="Base URL of the remote Tessera API serving this agent",
    )


class CapabilityInvocation(BaseModel):
    """Structured request from the model to run a capability."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Capability name to dispatch")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Argument payload")
    invocation_id: str = Field(..., description="Identifier echoed back in the result")


class CapabilityResult(BaseModel):
    """Outcome of a dispatched (or rejected) capability invocation."""

    model_config = ConfigDict(frozen=True)

    invocation_id: str
    success: bool
    payload: Any = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    attempts: int = 0
    usage: Usage = Field(default_factory=Usage)

    @classmethod
    def ok(cls, invocation_id: str, payload: Any, *, attempts: int = 1, usage: Optional[Usage] = None) -> "CapabilityResult":
        return cls(
            invocation_id=invocation_id,
            success=True,
            payload=payload,
            attempts=attempts,
            usage=usage or Usage(),
        )

    @classmethod
    def failure(
        cls,
        invocation_id: str,
        kind: str,
        detail: str,
        *,
        attempts: int = 0,
        usage: Optional[Usage] = None,
    ) -> "CapabilityResult":
        return cls(
            invocation_id=invocation_id,
            success=False,
            error_kind=kind,
            error_detail=detail,
            attempts=attempts,
            usage=usage or Usage(),
        )


class Message(BaseModel):
    """Single immutable entry of a task conversation."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    capability_call: Optional[CapabilityInvocation] = None
    invocation_id: Optional[str] = None


class Context(BaseModel):
    """Ordered messages assembled for exactly one gateway call."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = ()

    def __len__(self) -> int:
        return len(self.messages)


class Signature(BaseModel):
    """Attestation over the sha256 hash of an exact payload."""

    model_config = ConfigDict(frozen=True)

    signer: str = Field(..., description="Agent id that produced the signature")
    payload_hash: str = Field(..., description="Hex sha256 of the signed payload")
    signature: str = Field(..., description="Hex-encoded signature bytes")
    public_key: str = Field(..., description="Hex-encoded verification key")
    scheme: str = Field(default="ed25519", description="Signature scheme identifier")

    @property
    def signature_bytes(self) -> bytes:
        return bytes.fromhex(self.signature)


class MemoryRecord(BaseModel):
    """Append-only memory of a completed task.

    Records are never mutated. Logical deletion appends a new record with
    ``tombstone=True`` and ``supersedes`` pointing at the removed record.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    agent_id: str
    embedding: tuple[float, ...]
    content: str
    timestamp: float
    task_id: Optional[str] = None
    signature: Optional[Signature] = None
    tombstone: bool = False
    supersedes: Optional[str] = None

    def provenance_payload(self) -> dict[str, Any]:
        """Fields covered by the provenance signature."""
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "task_id": self.task_id,
            "tombstone": self.tombstone,
            "supersedes": self.supersedes,
        }


class GatewayRequest(BaseModel):
    """Input to a single model gateway call."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    context: Context
    capabilities: tuple[CapabilityDescriptor, ...] = ()


class GatewayResponse(BaseModel):
    """Model output: either a final answer or one capability invocation."""

    model_config = ConfigDict(frozen=True)

    final_answer: Optional[str] = None
    invocation: Optional[CapabilityInvocation] = None
    usage: Usage = Field(default_factory=Usage)

    @model_validator(mode="after")
    def _exactly_one(self) -> "GatewayResponse":
        if (self.final_answer is None) == (self.invocation is None):
            raise ValueError("GatewayResponse requires exactly one of final_answer or invocation")
        return self

    @classmethod
    def answer(cls, text: str, *, usage: Optional[Usage] = None) -> "GatewayResponse":
        return cls(final_answer=text, usage=usage or Usage())

    @classmethod
    def invoke(
        cls,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
        *,
        invocation_id: str,
        usage: Optional[Usage] = None,
    ) -> "GatewayResponse":
        return cls(
            invocation=CapabilityInvocation(
                name=name, arguments=dict(arguments or {}), invocation_id=invocation_id
            ),
            usage=usage or Usage(),
        )


class ErrorInfo(BaseModel):
    """Error kind and detail recorded on a failed task."""

    model_config = ConfigDict(frozen=True)

    kind: str
    detail: str


class TaskOutcome(BaseModel):
    """Terminal view of a task returned by get_result.

    Completed outcomes carry the signed output and its Signature; failed
    outcomes carry the error and the last context, never a partial answer.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    agent_id: str
    status: TaskStatus
    output: Optional[str] = None
    signature: Optional[Signature] = None
    error: Optional[ErrorInfo] = None
    context: Optional[Context] = None
    steps: int = 0
    usage: Usage = Field(default_factory=Usage)

    @property
    def ok(self) -> bool:
        return self.status is TaskStatus.COMPLETED


__all__ = [
    "CapabilityDescriptor",
    "CapabilityInvocation",
    "CapabilityKind",
    "CapabilityResult",
    "Context",
    "ErrorInfo",
    "GatewayRequest",
    "GatewayResponse",
    "MemoryRecord",
    "Message",
    "MessageRole",
    "Signature",
    "TaskOutcome",
    "TaskStatus",
    "Usage",
]
