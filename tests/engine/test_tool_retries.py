"""Retry and failure classification for tool dispatch."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Awaitable, Callable

import pytest

from tessera.core.types import CapabilityDescriptor, CapabilityInvocation, GatewayResponse
from tessera.engine import ExecutionEngine, ToolRuntime
from tessera.errors import TransientCapabilityFailure
from tessera.gateway import ScriptedGateway
from tessera.identity.provider import Ed25519IdentityProvider
from tessera.observability.context import current_tool_call
from tessera.observability.logger import ObservabilityLogger
from tessera.observability.metrics import get_metrics_registry
from tessera.registry import CapabilityRegistry
from tessera.settings import EngineLimits

OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {"balance": {"type": "integer"}},
    "required": ["balance"],
}


class LedgerBusy(Exception):
    pass


def flaky(failures: list[BaseException], attempts: list[int]) -> Callable[[dict[str, Any]], Awaitable[Any]]:
    """Tool raising each queued failure once, then answering."""

    async def balance_of(arguments: dict[str, Any]) -> dict[str, int]:
        attempts.append(len(attempts) + 1)
        if failures:
            raise failures.pop(0)
        return {"balance": 7}

    return balance_of


def registry_with(
    implementation: Callable[[dict[str, Any]], Awaitable[Any]], **descriptor: Any
) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register(
        CapabilityDescriptor(name="balance_of", kind="tool", output_schema=OUTPUT_SCHEMA, **descriptor),
        implementation,
    )
    return registry


INVOCATION = CapabilityInvocation(name="balance_of", arguments={"account": "alice"}, invocation_id="call-1")


class TestToolRuntime:
    @pytest.fixture
    def delays(self) -> list[float]:
        return []

    @pytest.fixture
    def runtime(self, delays: list[float]) -> ToolRuntime:
        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        limits = EngineLimits(max_retries=3, backoff_base_ms=100, backoff_max_ms=2000)
        return ToolRuntime(limits, sleep=record_sleep)

    @pytest.mark.asyncio
    async def test_succeeds_on_second_attempt(self, runtime: ToolRuntime, delays: list[float]) -> None:
        attempts: list[int] = []
        registry = registry_with(flaky([ConnectionError("reset")], attempts))

        result = await runtime.invoke(registry.snapshot(), INVOCATION)

        assert result.success
        assert result.payload == {"balance": 7}
        assert result.attempts == 2
        assert attempts == [1, 2]
        assert delays == [0.1]

    @pytest.mark.asyncio
    async def test_each_attempt_sees_its_call(self, runtime: ToolRuntime) -> None:
        seen: list[tuple[str, str, int, str | None]] = []

        async def balance_of(arguments: dict[str, Any]) -> dict[str, int]:
            call = current_tool_call()
            assert call is not None
            seen.append((call.capability, call.invocation_id, call.attempt, call.task_id))
            call.log("ledger_lookup", {"account": arguments["account"]})
            if call.attempt == 1:
                raise ConnectionError("reset")
            return {"balance": 7}

        observer = ObservabilityLogger("task-lookup")
        result = await runtime.invoke(registry_with(balance_of).snapshot(), INVOCATION, observer=observer)

        assert result.success
        assert seen == [
            ("balance_of", "call-1", 1, "task-lookup"),
            ("balance_of", "call-1", 2, "task-lookup"),
        ]
        assert [entry["data"]["attempt"] for entry in observer.events("ledger_lookup")] == [1, 2]
        assert current_tool_call() is None

    @pytest.mark.asyncio
    async def test_exhausts_exactly_max_retries(self, runtime: ToolRuntime, delays: list[float]) -> None:
        attempts: list[int] = []
        failures: list[BaseException] = [TimeoutError("slow") for _ in range(5)]
        registry = registry_with(flaky(failures, attempts))
        observer = ObservabilityLogger("task-retry")

        result = await runtime.invoke(registry.snapshot(), INVOCATION, observer=observer)

        assert not result.success
        assert result.error_kind == "TransientCapabilityFailure"
        assert result.attempts == 3
        assert attempts == [1, 2, 3]
        assert delays == [0.1, 0.2]
        assert [entry["data"]["attempt"] for entry in observer.events("retry")] == [1, 2, 3]

        metrics = get_metrics_registry().snapshot()
        assert metrics.capability_calls == {"balance_of": 3}
        assert metrics.retries_total == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, runtime: ToolRuntime, delays: list[float]) -> None:
        attempts: list[int] = []
        registry = registry_with(flaky([KeyError("alice")], attempts))

        result = await runtime.invoke(registry.snapshot(), INVOCATION)

        assert result.error_kind == "CapabilityFailure"
        assert result.attempts == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_declared_transient_errors(self, runtime: ToolRuntime) -> None:
        attempts: list[int] = []
        registry = registry_with(
            flaky([LedgerBusy("locked"), TransientCapabilityFailure("upstream 503")], attempts),
            transient_errors=("LedgerBusy",),
        )

        result = await runtime.invoke(registry.snapshot(), INVOCATION)

        assert result.success
        assert attempts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_output_schema_violation_is_not_retried(self, runtime: ToolRuntime) -> None:
        calls: list[int] = []

        async def balance_of(arguments: dict[str, Any]) -> dict[str, str]:
            calls.append(1)
            return {"balance": "lots"}

        result = await runtime.invoke(registry_with(balance_of).snapshot(), INVOCATION)

        assert result.error_kind == "SchemaViolation"
        assert result.attempts == 1
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_unbound_tool(self, runtime: ToolRuntime) -> None:
        registry = CapabilityRegistry([CapabilityDescriptor(name="balance_of", kind="tool")])
        result = await runtime.invoke(registry.snapshot(), INVOCATION)
        assert result.error_kind == "NotFound"
        assert result.attempts == 0


@pytest.mark.asyncio
async def test_exhausted_retries_are_reported_to_the_model(
    identity: Ed25519IdentityProvider, limits: EngineLimits
) -> None:
    attempts: list[int] = []
    registry = registry_with(flaky([ConnectionError("reset") for _ in range(3)], attempts))
    gateway = ScriptedGateway(
        [
            GatewayResponse.invoke("balance_of", {"account": "alice"}, invocation_id="call-1"),
            GatewayResponse.answer("The ledger is unreachable"),
        ]
    )
    engine = ExecutionEngine(
        ["ledger"],
        registry=registry,
        gateway=gateway,
        identity=identity,
        limits=replace(limits, max_retries=3),
    )

    outcome = await engine.execute("ledger", "What is Alice's balance?")

    assert outcome.ok
    assert attempts == [1, 2, 3]
    error = json.loads(gateway.requests[1].context.messages[-1].content)
    assert error["error"] == "TransientCapabilityFailure"
