"""Pydantic models for API request/response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tessera.core.types import Context, ErrorInfo, Signature, TaskOutcome, TaskStatus, Usage


class TaskSubmitRequest(BaseModel):
    """Request payload for submitting a task."""

    model_config = ConfigDict(extra="forbid")

    agent_id: str = Field(..., description="Agent that should handle the task")
    input: Any = Field(..., description="Task input (text or JSON)")
    deadline_s: float | None = Field(
        default=None, gt=0, description="Optional wall-clock budget in seconds"
    )
    wait: bool = Field(
        default=False, description="Run the task to completion before responding"
    )
    call_stack: list[str] = Field(
        default_factory=list,
        description="Agents above this task when it is delegated from another engine",
    )


class TaskSubmitResponse(BaseModel):
    task_id: str = Field(..., description="Identifier of the created task")
    status: TaskStatus = Field(..., description="Status at response time")


class TaskStatusResponse(BaseModel):
    task_id: str
    status: TaskStatus


class TaskResultResponse(BaseModel):
    """Terminal view of a task."""

    task_id: str
    agent_id: str
    status: TaskStatus
    output: str | None = None
    signature: Signature | None = None
    error: ErrorInfo | None = None
    steps: int = 0
    usage: Usage = Field(default_factory=Usage)
    context: Context | None = Field(
        default=None, description="Last context sent to the model; only set for failed tasks"
    )

    @classmethod
    def from_outcome(cls, outcome: TaskOutcome) -> "TaskResultResponse":
        return cls(
            task_id=outcome.task_id,
            agent_id=outcome.agent_id,
            status=outcome.status,
            output=outcome.output,
            signature=outcome.signature,
            error=outcome.error,
            steps=outcome.steps,
            usage=outcome.usage,
            context=outcome.context if outcome.status is TaskStatus.FAILED else None,
        )


class TaskCancelResponse(BaseModel):
    task_id: str
    cancelled: bool = Field(..., description="False when the task was already terminal")


class AgentInfo(BaseModel):
    agent_id: str
    description: str | None = None


__all__ = [
    "AgentInfo",
    "TaskCancelResponse",
    "TaskResultResponse",
    "TaskStatusResponse",
    "TaskSubmitRequest",
    "TaskSubmitResponse",
]
