"""Sub-agent delegation between execution engines."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Optional, Union

from tessera.core.types import CapabilityInvocation, CapabilityResult
from tessera.engine.task import Task
from tessera.errors import (
    AttestationUnavailable,
    CapabilityFailure,
    CapabilityNotFound,
    DelegationCycle,
    DelegationDepthExceeded,
    EngineSaturated,
    InvalidInput,
    SignatureInvalid,
    TaskCancelled,
    TaskNotFound,
    TesseraError,
    TransientCapabilityFailure,
)
from tessera.observability.metrics import get_metrics_registry
from tessera.registry import RegistrySnapshot
from tessera.settings import resolve_limits

if TYPE_CHECKING:
    from tessera.engine.engine import ExecutionEngine
    from tessera.engine.remote import RemoteEngine

    TargetEngine = Union[ExecutionEngine, RemoteEngine]

logger = logging.getLogger(__name__)

# Failures of a sub-task that also end the delegating task
STRUCTURAL_ERRORS: dict[str, type[TesseraError]] = {
    DelegationCycle.kind: DelegationCycle,
    DelegationDepthExceeded.kind: DelegationDepthExceeded,
}

# Sub-task failures reported to the delegating model as a capability result
RECOVERABLE_ERRORS = (
    AttestationUnavailable,
    CapabilityFailure,
    EngineSaturated,
    InvalidInput,
    SignatureInvalid,
    TaskNotFound,
    TransientCapabilityFailure,
)


def check_call_stack(call_stack: tuple[str, ...], target: str, max_depth: int) -> None:
    """Raise DelegationCycle or DelegationDepthExceeded for a disallowed hop."""
    if target in call_stack:
        chain = " -> ".join(call_stack + (target,))
        raise DelegationCycle(f"Delegation cycle detected: {chain}")
    if len(call_stack) >= max_depth:
        raise DelegationDepthExceeded(
            f"Delegating to '{target}' would exceed the maximum call depth of {max_depth}"
        )


class DelegationLayer:
    """
    Routes agent invocations to the engine serving the target agent.

    Each delegated sub-task inherits its parent's call stack with the target
    appended. A target already on the stack is a cycle, and a stack longer
    than ``max_depth`` agents is refused; both are structural errors
    that fail the delegating task. Sub-task usage is reported back on the
    CapabilityResult so the parent can accumulate it.

    Agents not served in this process can be reached through a RemoteEngine;
    local engines win when both serve the same agent id.
    """

    def __init__(self, *, max_depth: Optional[int] = None) -> None:
        self.max_depth = max_depth if max_depth is not None else resolve_limits().max_delegation_depth
        self._engines: dict[str, "ExecutionEngine"] = {}
        self._remotes: dict[str, "RemoteEngine"] = {}
        self._inflight: dict[str, set[tuple["TargetEngine", str]]] = {}
        self._lock = threading.Lock()

    def register_engine(self, engine: "ExecutionEngine") -> None:
        with self._lock:
            for agent_id in engine.agent_ids:
                self._engines[agent_id] = engine

    def register_remote(self, remote: "RemoteEngine") -> None:
        with self._lock:
            for agent_id in remote.agent_ids:
                self._remotes[agent_id] = remote

    def engine_for(self, agent_id: str) -> Optional["ExecutionEngine"]:
        return self._engines.get(RegistrySnapshot.normalize_name(agent_id))

    def remote_for(self, agent_id: str) -> Optional["RemoteEngine"]:
        return self._remotes.get(RegistrySnapshot.normalize_name(agent_id))

    def check(self, parent: Task, target: str) -> None:
        """Raise if delegating from ``parent`` to ``target`` is not allowed."""
        check_call_stack(parent.call_stack, RegistrySnapshot.normalize_name(target), self.max_depth)

    @staticmethod
    def _sub_input(arguments: dict[str, Any]) -> Any:
        prompt = arguments.get("prompt")
        if isinstance(prompt, str) and set(arguments) == {"prompt"}:
            return prompt
        return dict(arguments)

    async def delegate(self, parent: Task, invocation: CapabilityInvocation) -> CapabilityResult:
        """Run ``invocation`` as a first-class sub-task and wait for it."""
        target = RegistrySnapshot.normalize_name(invocation.name)
        self.check(parent, target)

        engine: Optional["TargetEngine"] = self.engine_for(target) or self.remote_for(target)
        if engine is None:
            return CapabilityResult.failure(
                invocation.invocation_id,
                CapabilityNotFound.kind,
                f"No engine serves agent '{target}'",
            )

        try:
            sub_id = await engine.submit(target, self._sub_input(invocation.arguments), parent=parent)
        except RECOVERABLE_ERRORS as exc:
            return CapabilityResult.failure(invocation.invocation_id, exc.kind, exc.detail)

        key = (engine, sub_id)
        with self._lock:
            self._inflight.setdefault(parent.id, set()).add(key)
        get_metrics_registry().record_delegation()
        logger.debug("Task %s delegated to %s as %s", parent.id, target, sub_id)
        try:
            outcome = await engine.run(sub_id)
        except RECOVERABLE_ERRORS as exc:
            return CapabilityResult.failure(invocation.invocation_id, exc.kind, exc.detail)
        finally:
            with self._lock:
                pending = self._inflight.get(parent.id)
                if pending is not None:
                    pending.discard(key)
                    if not pending:
                        del self._inflight[parent.id]

        if outcome.ok:
            return CapabilityResult.ok(
                invocation.invocation_id,
                {
                    "output": outcome.output,
                    "task_id": outcome.task_id,
                    "signature": outcome.signature.model_dump() if outcome.signature else None,
                },
                usage=outcome.usage,
            )

        error = outcome.error
        kind = error.kind if error else "CapabilityFailure"
        detail = error.detail if error else "sub-task failed"
        structural = STRUCTURAL_ERRORS.get(kind)
        if structural is not None:
            raise structural(detail, data={"usage": outcome.usage})
        if kind == TaskCancelled.kind and parent.cancel_requested:
            raise TaskCancelled(f"Task {parent.id} cancelled while awaiting {target}")
        return CapabilityResult.failure(invocation.invocation_id, kind, detail, usage=outcome.usage)

    async def cancel(self, parent_task_id: str) -> int:
        """Signal cancellation to every in-flight sub-task of ``parent_task_id``."""
        with self._lock:
            targets = list(self._inflight.get(parent_task_id, ()))
        signalled = 0
        for engine, sub_id in targets:
            try:
                cancelled = await engine.cancel(sub_id)
            except RECOVERABLE_ERRORS as exc:
                logger.warning("Could not cancel sub-task %s: %s", sub_id, exc.detail)
                continue
            if cancelled:
                signalled += 1
        return signalled


__all__ = ["DelegationLayer", "RECOVERABLE_ERRORS", "STRUCTURAL_ERRORS", "check_call_stack"]
