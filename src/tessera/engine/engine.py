"""
Execution engine: drives tasks through the reasoning loop.

Each step assembles a Context (system prompt, recalled memories and the
task's own messages), asks the model gateway for either a final answer or a
single capability invocation, and dispatches that invocation to the tool
runtime or the delegation layer. Final answers are signed and verified,
then written to memory, before the task becomes Completed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from tessera.core.types import (
    CapabilityDescriptor,
    CapabilityInvocation,
    CapabilityResult,
    Context,
    ErrorInfo,
    GatewayRequest,
    Message,
    TaskOutcome,
    TaskStatus,
    Usage,
)
from tessera.engine.delegation import DelegationLayer, check_call_stack
from tessera.engine.task import Task, is_empty_input, new_task_id
from tessera.engine.tools import Sleeper, ToolRuntime
from tessera.errors import (
    AttestationUnavailable,
    CapabilityNotFound,
    DeadlineExceeded,
    EngineSaturated,
    InvalidInput,
    InvalidTransition,
    MemoryUnavailable,
    ModelGatewayFailure,
    SchemaViolation,
    StepLimitExceeded,
    TaskCancelled,
    TaskNotFinished,
    TaskNotFound,
    TesseraError,
)
from tessera.gateway.base import ModelGateway
from tessera.identity.provider import IdentityProvider
from tessera.memory.manager import MemoryManager
from tessera.observability.logger import ObservabilityLogger
from tessera.observability.metrics import get_metrics_registry
from tessera.registry import CapabilityRegistry, RegistrySnapshot
from tessera.settings import EngineLimits, resolve_limits

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentProfile:
    """Static definition of an agent served by an engine."""

    agent_id: str
    system_prompt: str = ""
    description: str = ""
    # None exposes every registered capability
    capabilities: Optional[tuple[str, ...]] = None
    expose_agent_prefix: bool = False

    def allows(self, name: str) -> bool:
        if self.capabilities is None:
            return True
        allowed = {RegistrySnapshot.normalize_name(item) for item in self.capabilities}
        return RegistrySnapshot.normalize_name(name) in allowed


class ExecutionEngine:
    """Owns task state for a set of agents and advances it step by step."""

    def __init__(
        self,
        agents: Iterable[Union[AgentProfile, str]],
        *,
        registry: CapabilityRegistry,
        gateway: ModelGateway,
        identity: IdentityProvider,
        memory: Optional[MemoryManager] = None,
        delegation: Optional[DelegationLayer] = None,
        limits: Optional[EngineLimits] = None,
        runs_dir: Optional[Path] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._profiles: dict[str, AgentProfile] = {}
        for agent in agents:
            profile = agent if isinstance(agent, AgentProfile) else AgentProfile(agent_id=str(agent))
            if profile.agent_id in self._profiles:
                raise ValueError(f"Agent '{profile.agent_id}' is defined twice")
            self._profiles[profile.agent_id] = profile
        if not self._profiles:
            raise ValueError("An execution engine needs at least one agent")

        self.registry = registry
        self.gateway = gateway
        self.identity = identity
        self.memory = memory
        self.delegation = delegation
        self.limits = limits or resolve_limits()
        self.runs_dir = runs_dir
        self.tools = ToolRuntime(self.limits, sleep=sleep)
        self._clock = clock

        self._tasks: dict[str, Task] = {}
        # Live tasks only; finished tasks keep their outcome and run summary
        self._observers: dict[str, ObservabilityLogger] = {}
        self._outcomes: OrderedDict[str, TaskOutcome] = OrderedDict()
        self._summaries: dict[str, dict[str, Any]] = {}
        self._executing: set[str] = set()
        self._admission = asyncio.Semaphore(self.limits.max_concurrent_tasks)

        if delegation is not None:
            delegation.register_engine(self)

    @property
    def agent_ids(self) -> tuple[str, ...]:
        return tuple(self._profiles)

    def profile(self, agent_id: str) -> AgentProfile:
        return self._profiles[RegistrySnapshot.normalize_name(agent_id)]

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    def observer_for(self, task_id: str) -> ObservabilityLogger:
        """Run logger of a task that has not finished yet."""
        try:
            return self._observers[task_id]
        except KeyError:
            raise TaskNotFound(f"Task '{task_id}' is not running") from None

    def run_summary(self, task_id: str) -> dict[str, Any]:
        """Summary written when ``task_id`` finished (span ids, usage, event count)."""
        summary = self._summaries.get(task_id)
        if summary is None:
            raise TaskNotFound(f"No run summary for task '{task_id}'")
        return dict(summary)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        agent_id: str,
        task_input: Any,
        *,
        deadline_s: Optional[float] = None,
        parent: Optional[Task] = None,
        call_stack: Sequence[str] = (),
    ) -> str:
        """
        Create a Pending task for ``agent_id``.

        ``parent`` links a sub-task delegated in this process. ``call_stack``
        carries the agents above a task delegated from another process.

        Raises:
            InvalidInput: Unknown agent or empty input
            DelegationCycle: ``agent_id`` already appears in ``call_stack``
            DelegationDepthExceeded: ``call_stack`` is already at the depth limit
            EngineSaturated: Admission limit reached (or timed out in block mode)
        """
        agent_id = RegistrySnapshot.normalize_name(agent_id)
        if agent_id not in self._profiles:
            raise InvalidInput(f"Unknown agent '{agent_id}'")
        if is_empty_input(task_input):
            raise InvalidInput("Task input must not be empty")
        inherited = parent.call_stack if parent is not None else tuple(str(item) for item in call_stack)
        if parent is None and inherited:
            check_call_stack(inherited, agent_id, self.limits.max_delegation_depth)

        await self._admit(agent_id)

        task_id = new_task_id()
        if deadline_s is not None:
            deadline: Optional[float] = self._clock() + deadline_s
        else:
            deadline = parent.deadline if parent is not None else None

        observer = ObservabilityLogger(
            task_id,
            slug=agent_id,
            base_dir=self.runs_dir,
            parent_span_id=parent.span_id if parent is not None else None,
        )
        task = Task(
            id=task_id,
            agent_id=agent_id,
            input=task_input,
            call_stack=inherited + (agent_id,),
            parent_task_id=parent.id if parent is not None else None,
            deadline=deadline,
            created_at=self._clock(),
            span_id=observer.span_id,
        )
        task.append(Message(role="user", content=task.input_text))
        self._tasks[task_id] = task
        self._observers[task_id] = observer
        observer.log(
            "submit",
            {
                "agent": agent_id,
                "parent_task_id": task.parent_task_id,
                "call_stack": list(task.call_stack),
            },
        )
        get_metrics_registry().record_submitted()
        logger.info("Submitted %s for agent %s (depth %d)", task_id, agent_id, task.depth)
        return task_id

    async def step(self, task_id: str) -> TaskStatus:
        """Advance ``task_id`` by one reasoning step and return its new status."""
        task = self._tasks.get(task_id)
        if task is None:
            return self.get_status(task_id)
        if task_id in self._executing:
            raise InvalidTransition(f"Task {task_id} is already executing a step")

        self._executing.add(task_id)
        try:
            if task.status is TaskStatus.PENDING:
                task.transition(TaskStatus.RUNNING)
            await self._advance(task)
        except TesseraError as exc:
            self._fail(task, exc)
        except asyncio.CancelledError:
            self._fail(task, TaskCancelled(f"Task {task_id} was cancelled while executing"))
            raise
        except Exception as exc:
            logger.exception("Unexpected error while executing %s", task_id)
            self._fail(task, TesseraError(f"{type(exc).__name__}: {exc}"))
        finally:
            self._executing.discard(task_id)
        return task.status

    async def run(self, task_id: str) -> TaskOutcome:
        """Step ``task_id`` until it is terminal."""
        while True:
            status = await self.step(task_id)
            if status.terminal:
                return self.get_result(task_id)

    async def execute(
        self,
        agent_id: str,
        task_input: Any,
        *,
        deadline_s: Optional[float] = None,
    ) -> TaskOutcome:
        """Submit and run a task to completion."""
        task_id = await self.submit(agent_id, task_input, deadline_s=deadline_s)
        return await self.run(task_id)

    def get_status(self, task_id: str) -> TaskStatus:
        task = self._tasks.get(task_id)
        if task is not None:
            return task.status
        outcome = self._outcomes.get(task_id)
        if outcome is None:
            raise TaskNotFound(f"Task '{task_id}' not found")
        return outcome.status

    def get_result(self, task_id: str) -> TaskOutcome:
        """Terminal outcome of ``task_id``; raises TaskNotFinished while it runs."""
        outcome = self._outcomes.get(task_id)
        if outcome is not None:
            return outcome
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task '{task_id}' not found")
        raise TaskNotFinished(f"Task '{task_id}' is {task.status.value}")

    async def cancel(self, task_id: str) -> bool:
        """
        Request cancellation of ``task_id``.

        An idle task fails immediately with TaskCancelled. A task in the middle
        of a step fails at the next step boundary and discards any result
        still in flight; its delegated sub-tasks are signalled too. Returns
        False if the task is already terminal.
        """
        task = self._tasks.get(task_id)
        if task is None:
            if task_id in self._outcomes:
                return False
            raise TaskNotFound(f"Task '{task_id}' not found")

        task.cancel_requested = True
        self._observers[task_id].log("cancel_requested", {"status": task.status.value})
        if task_id not in self._executing:
            self._fail(task, TaskCancelled(f"Task {task_id} was cancelled"))
        elif self.delegation is not None:
            await self.delegation.cancel(task_id)
        return True

    # ------------------------------------------------------------------
    # Step internals
    # ------------------------------------------------------------------

    async def _admit(self, agent_id: str) -> None:
        if self.limits.admission_mode == "block":
            try:
                await asyncio.wait_for(
                    self._admission.acquire(), timeout=self.limits.admission_timeout_s
                )
            except asyncio.TimeoutError:
                get_metrics_registry().record_rejected()
                raise EngineSaturated(
                    f"No task slot freed within {self.limits.admission_timeout_s}s for agent '{agent_id}'"
                ) from None
            return

        if self._admission.locked():
            get_metrics_registry().record_rejected()
            raise EngineSaturated(
                f"Engine is at its limit of {self.limits.max_concurrent_tasks} concurrent tasks"
            )
        await self._admission.acquire()

    async def _advance(self, task: Task) -> None:
        profile = self._profiles[task.agent_id]
        observer = self._observers[task.id]

        if task.cancel_requested:
            raise TaskCancelled(f"Task {task.id} was cancelled")
        if task.deadline is not None and self._clock() > task.deadline:
            raise DeadlineExceeded(f"Task {task.id} passed its deadline")
        if task.steps >= self.limits.max_steps:
            raise StepLimitExceeded(
                f"Task {task.id} reached the limit of {self.limits.max_steps} reasoning steps"
            )
        task.steps += 1

        # One snapshot per step; a concurrent registry reload applies from the next step
        snapshot = self.registry.snapshot()
        context = await self._assemble_context(task, profile)
        task.last_context = context
        request = GatewayRequest(
            agent_id=task.agent_id,
            context=context,
            capabilities=self._capabilities_for(profile, snapshot),
        )
        observer.log(
            "step",
            {
                "step": task.steps,
                "messages": len(context),
                "registry_version": snapshot.version,
            },
        )

        try:
            response = await self.gateway.complete(request)
        except TesseraError:
            raise
        except Exception as exc:
            raise ModelGatewayFailure(f"Model gateway call failed: {exc}") from exc

        task.usage = task.usage.accumulate(response.usage)
        observer.record_usage(response.usage, step=task.steps)

        if task.cancel_requested:
            raise TaskCancelled(f"Task {task.id} was cancelled")

        if response.final_answer is not None:
            await self._complete(task, response.final_answer)
            return

        assert response.invocation is not None
        await self._dispatch(task, profile, snapshot, response.invocation)

    async def _assemble_context(self, task: Task, profile: AgentProfile) -> Context:
        messages: list[Message] = []
        if profile.system_prompt:
            messages.append(Message(role="system", content=profile.system_prompt))
        if self.memory is not None and self.limits.memory_top_k > 0:
            hits = await self.memory.recall(task.agent_id, task.input_text, self.limits.memory_top_k)
            for record, score in hits:
                messages.append(
                    Message(role="system", content=f"Memory (score {score:.3f}): {record.content}")
                )
        messages.extend(task.messages)
        return Context(messages=tuple(messages))

    @staticmethod
    def _capabilities_for(
        profile: AgentProfile, snapshot: RegistrySnapshot
    ) -> tuple[CapabilityDescriptor, ...]:
        return snapshot.definitions(
            names=profile.capabilities,
            with_agent_prefix=profile.expose_agent_prefix,
        )

    async def _dispatch(
        self,
        task: Task,
        profile: AgentProfile,
        snapshot: RegistrySnapshot,
        invocation: CapabilityInvocation,
    ) -> None:
        observer = self._observers[task.id]
        task.append(
            Message(
                role="assistant",
                content=f"Invoking {invocation.name}",
                capability_call=invocation,
                invocation_id=invocation.invocation_id,
            )
        )

        try:
            descriptor = snapshot.resolve(invocation.name)
        except CapabilityNotFound as exc:
            self._append_result(task, CapabilityResult.failure(invocation.invocation_id, exc.kind, exc.detail))
            return
        if not profile.allows(descriptor.name):
            self._append_result(
                task,
                CapabilityResult.failure(
                    invocation.invocation_id,
                    CapabilityNotFound.kind,
                    f"Capability '{descriptor.name}' is not available to agent '{task.agent_id}'",
                ),
            )
            return

        validation = snapshot.validate(descriptor.name, invocation.arguments)
        if not validation.ok:
            self._append_result(
                task,
                CapabilityResult.failure(
                    invocation.invocation_id,
                    SchemaViolation.kind,
                    f"Arguments for '{descriptor.name}' violate its schema: {validation.detail}",
                ),
            )
            return

        if descriptor.kind == "agent":
            if self.delegation is None:
                self._append_result(
                    task,
                    CapabilityResult.failure(
                        invocation.invocation_id,
                        CapabilityNotFound.kind,
                        "Delegation is not configured for this engine",
                    ),
                )
                return
            self.delegation.check(task, descriptor.name)

        observer.log(
            "capability_call",
            {
                "capability": descriptor.name,
                "kind": descriptor.kind,
                "invocation_id": invocation.invocation_id,
            },
        )
        task.transition(TaskStatus.AWAITING_CAPABILITY)
        try:
            if descriptor.kind == "agent":
                assert self.delegation is not None
                result = await self.delegation.delegate(task, invocation)
            else:
                result = await self.tools.invoke(snapshot, invocation, observer=observer)
        finally:
            task.transition(TaskStatus.RUNNING)

        task.usage = task.usage.accumulate(result.usage)
        if task.cancel_requested:
            raise TaskCancelled(f"Task {task.id} was cancelled; result of {descriptor.name} discarded")
        self._append_result(task, result)

    def _append_result(self, task: Task, result: CapabilityResult) -> None:
        if result.success:
            payload = result.payload
            content = payload if isinstance(payload, str) else json.dumps(
                payload, sort_keys=True, ensure_ascii=False, default=str
            )
        else:
            content = json.dumps(
                {"error": result.error_kind, "detail": result.error_detail},
                sort_keys=True,
                ensure_ascii=False,
            )
        task.append(
            Message(role="capability_result", content=content, invocation_id=result.invocation_id)
        )
        self._observers[task.id].log(
            "capability_result",
            {
                "invocation_id": result.invocation_id,
                "success": result.success,
                "error_kind": result.error_kind,
                "attempts": result.attempts,
            },
        )

    async def _complete(self, task: Task, answer: str) -> None:
        payload = answer.encode("utf-8")
        try:
            signature = await self.identity.sign(task.agent_id, payload)
        except Exception as exc:
            detail = exc.detail if isinstance(exc, TesseraError) else str(exc)
            raise AttestationUnavailable(
                f"Could not sign output of agent '{task.agent_id}': {detail}"
            ) from exc
        if not await self.identity.verify(signature, payload):
            raise AttestationUnavailable(f"Signature for task {task.id} did not verify")

        if self.memory is not None:
            try:
                await self.memory.remember(
                    agent_id=task.agent_id,
                    content=f"input: {task.input_text}\noutput: {answer}",
                    task_id=task.id,
                )
            except Exception as exc:
                raise MemoryUnavailable(f"Could not record memory for task {task.id}: {exc}") from exc

        task.append(Message(role="assistant", content=answer))
        task.output = answer
        task.signature = signature
        task.transition(TaskStatus.COMPLETED)
        self._finish(task)

    def _fail(self, task: Task, exc: TesseraError) -> None:
        if task.status.terminal:
            return
        if task.status is not TaskStatus.RUNNING:
            task.transition(TaskStatus.RUNNING)
        usage = exc.data.get("usage")
        if isinstance(usage, Usage):
            task.usage = task.usage.accumulate(usage)
        task.error = ErrorInfo(kind=exc.kind, detail=exc.detail)
        task.transition(TaskStatus.FAILED)
        self._finish(task)

    def _finish(self, task: Task) -> None:
        outcome = task.to_outcome()
        self._outcomes[task.id] = outcome
        self._tasks.pop(task.id, None)
        self._admission.release()

        observer = self._observers.pop(task.id)
        observer.log(
            "end",
            {
                "status": outcome.status.value,
                "steps": outcome.steps,
                "error": outcome.error.model_dump() if outcome.error else None,
                "usage": outcome.usage.model_dump(),
            },
        )
        self._summaries[task.id] = observer.finalize(
            outcome.status.value, outcome.error.kind if outcome.error else None
        )
        self._evict_finished()
        get_metrics_registry().record(outcome)

        if outcome.ok:
            logger.info("Task %s completed in %d steps", task.id, outcome.steps)
        else:
            assert outcome.error is not None
            logger.info(
                "Task %s failed after %d steps: %s", task.id, outcome.steps, outcome.error.kind
            )

    def _evict_finished(self) -> None:
        while len(self._outcomes) > self.limits.outcome_retention:
            task_id, _ = self._outcomes.popitem(last=False)
            self._summaries.pop(task_id, None)
            logger.debug("Evicted outcome of %s", task_id)


__all__ = ["AgentProfile", "ExecutionEngine"]
