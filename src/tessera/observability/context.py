"""
The capability call a tool implementation is currently serving.

ToolRuntime binds a ToolCall around every attempt, so an implementation can
look up which task and invocation it runs for and add events to that task's
run log without extra arguments.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from tessera.observability.logger import ObservabilityLogger


@dataclass(frozen=True)
class ToolCall:
    capability: str
    invocation_id: str
    attempt: int = 1
    observer: Optional[ObservabilityLogger] = None

    @property
    def task_id(self) -> Optional[str]:
        return self.observer.run_id if self.observer is not None else None

    def log(self, event: str, data: Optional[dict[str, Any]] = None) -> None:
        """Record ``event`` on the invoking task, tagged with this call."""
        if self.observer is None:
            return
        self.observer.log(
            event,
            {
                "capability": self.capability,
                "invocation_id": self.invocation_id,
                "attempt": self.attempt,
                **(data or {}),
            },
        )


_CURRENT_CALL: ContextVar[Optional[ToolCall]] = ContextVar("tessera_tool_call", default=None)


def current_tool_call() -> Optional[ToolCall]:
    return _CURRENT_CALL.get()


def get_current_observer() -> Optional[ObservabilityLogger]:
    """Run logger of the task whose capability call is in progress, if any."""
    call = _CURRENT_CALL.get()
    return call.observer if call is not None else None


@contextmanager
def tool_call(call: ToolCall) -> Iterator[ToolCall]:
    token = _CURRENT_CALL.set(call)
    try:
        yield call
    finally:
        _CURRENT_CALL.reset(token)


__all__ = ["ToolCall", "current_tool_call", "get_current_observer", "tool_call"]
