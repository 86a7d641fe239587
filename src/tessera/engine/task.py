"""Task state machine."""

from __future__ import annotations

import itertools
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from tessera.core.types import (
    Context,
    ErrorInfo,
    Message,
    Signature,
    TaskOutcome,
    TaskStatus,
    Usage,
)
from tessera.errors import InvalidTransition

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.AWAITING_CAPABILITY, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.AWAITING_CAPABILITY: frozenset({TaskStatus.RUNNING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

_TASK_SEQ = itertools.count(1)


def new_task_id() -> str:
    """Unique, creation-ordered task id."""
    return f"task-{next(_TASK_SEQ):08d}-{uuid.uuid4().hex[:8]}"


def render_input(task_input: Any) -> str:
    if isinstance(task_input, str):
        return task_input
    return json.dumps(task_input, sort_keys=True, ensure_ascii=False, default=str)


def is_empty_input(task_input: Any) -> bool:
    if task_input is None:
        return True
    if isinstance(task_input, str):
        return not task_input.strip()
    if isinstance(task_input, (dict, list, tuple)):
        return len(task_input) == 0
    return False


@dataclass
class Task:
    """Mutable execution state of one agent invocation.

    Only the owning engine mutates a Task, and only through ``transition``
    and ``append``.
    """

    id: str
    agent_id: str
    input: Any
    call_stack: tuple[str, ...]
    parent_task_id: Optional[str] = None
    deadline: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    status: TaskStatus = TaskStatus.PENDING
    messages: list[Message] = field(default_factory=list)
    steps: int = 0
    usage: Usage = field(default_factory=Usage)
    output: Optional[str] = None
    signature: Optional[Signature] = None
    error: Optional[ErrorInfo] = None
    last_context: Optional[Context] = None
    cancel_requested: bool = False
    span_id: Optional[str] = None
    history: list[TaskStatus] = field(default_factory=lambda: [TaskStatus.PENDING])

    @property
    def input_text(self) -> str:
        return render_input(self.input)

    @property
    def depth(self) -> int:
        """Delegation hops between the root task and this one."""
        return len(self.call_stack) - 1

    def transition(self, new_status: TaskStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Task {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.history.append(new_status)

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def to_outcome(self) -> TaskOutcome:
        return TaskOutcome(
            task_id=self.id,
            agent_id=self.agent_id,
            status=self.status,
            output=self.output if self.status is TaskStatus.COMPLETED else None,
            signature=self.signature if self.status is TaskStatus.COMPLETED else None,
            error=self.error,
            context=self.last_context,
            steps=self.steps,
            usage=self.usage,
        )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Task",
    "is_empty_input",
    "new_task_id",
    "render_input",
]
