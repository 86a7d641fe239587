"""Tool dispatch with transient-failure retries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from tessera.core.types import CapabilityDescriptor, CapabilityInvocation, CapabilityResult
from tessera.errors import CapabilityNotFound, SchemaViolation, TesseraError, TransientCapabilityFailure
from tessera.observability.context import ToolCall, tool_call
from tessera.observability.logger import ObservabilityLogger
from tessera.observability.metrics import get_metrics_registry
from tessera.registry import RegistrySnapshot
from tessera.settings import EngineLimits

logger = logging.getLogger(__name__)

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
)

Sleeper = Callable[[float], Awaitable[Any]]


def is_transient(exc: BaseException, descriptor: CapabilityDescriptor) -> bool:
    """Network and timeout errors, retryable TesseraErrors, or names the descriptor lists."""
    if isinstance(exc, TesseraError):
        return exc.retryable
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    return type(exc).__name__ in descriptor.transient_errors


class ToolRuntime:
    """Runs tool implementations from a registry snapshot.

    A transient failure is attempted ``limits.max_retries`` times in total
    with capped exponential backoff between attempts. Any other failure, and
    any result that violates the output schema, is returned immediately.
    Failures come back as CapabilityResult values so the model can react to
    them on its next step.
    """

    def __init__(self, limits: EngineLimits, *, sleep: Sleeper = asyncio.sleep) -> None:
        self.limits = limits
        self._sleep = sleep

    async def invoke(
        self,
        snapshot: RegistrySnapshot,
        invocation: CapabilityInvocation,
        *,
        observer: Optional[ObservabilityLogger] = None,
    ) -> CapabilityResult:
        try:
            descriptor = snapshot.resolve(invocation.name)
        except CapabilityNotFound as exc:
            return CapabilityResult.failure(invocation.invocation_id, exc.kind, exc.detail)

        implementation = snapshot.implementation(descriptor.name)
        if implementation is None:
            return CapabilityResult.failure(
                invocation.invocation_id,
                CapabilityNotFound.kind,
                f"Capability '{descriptor.name}' has no implementation bound",
            )

        max_attempts = self.limits.max_retries
        last_error: Optional[BaseException] = None
        metrics = get_metrics_registry()

        for attempt in range(max_attempts):
            metrics.record_capability_call(descriptor.name)
            call = ToolCall(descriptor.name, invocation.invocation_id, attempt + 1, observer)
            try:
                with tool_call(call):
                    payload = await implementation(dict(invocation.arguments))
            except Exception as exc:
                if not is_transient(exc, descriptor):
                    kind = exc.kind if isinstance(exc, TesseraError) else "CapabilityFailure"
                    logger.info("Capability %s failed: %s", descriptor.name, exc)
                    return CapabilityResult.failure(
                        invocation.invocation_id, kind, str(exc) or type(exc).__name__, attempts=attempt + 1
                    )

                last_error = exc
                if observer is not None:
                    observer.log(
                        "retry",
                        {
                            "capability": descriptor.name,
                            "attempt": attempt + 1,
                            "error": str(exc),
                            "type": type(exc).__name__,
                        },
                    )
                if attempt < max_attempts - 1:
                    metrics.record_retry()
                    delay = self.limits.backoff_seconds(attempt)
                    if delay > 0:
                        await self._sleep(delay)
                continue

            outcome = snapshot.validate_output(descriptor.name, payload)
            if not outcome.ok:
                return CapabilityResult.failure(
                    invocation.invocation_id,
                    SchemaViolation.kind,
                    f"Output of '{descriptor.name}' violates its schema: {outcome.detail}",
                    attempts=attempt + 1,
                )
            return CapabilityResult.ok(invocation.invocation_id, payload, attempts=attempt + 1)

        logger.warning(
            "Capability %s exhausted %d attempts: %s", descriptor.name, max_attempts, last_error
        )
        return CapabilityResult.failure(
            invocation.invocation_id,
            TransientCapabilityFailure.kind,
            f"'{descriptor.name}' failed after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
        )


__all__ = ["TRANSIENT_EXCEPTIONS", "ToolRuntime", "is_transient"]
