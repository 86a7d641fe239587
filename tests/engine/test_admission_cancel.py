"""Admission control and cancellation."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import pytest

from tessera.core.types import CapabilityDescriptor, GatewayResponse, TaskStatus
from tessera.engine import ExecutionEngine
from tessera.errors import EngineSaturated, InvalidTransition, TaskNotFound
from tessera.gateway import ScriptedGateway
from tessera.identity.provider import Ed25519IdentityProvider
from tessera.observability.metrics import get_metrics_registry
from tessera.registry import CapabilityRegistry
from tessera.settings import EngineLimits


def answering_engine(
    identity: Ed25519IdentityProvider, limits: EngineLimits, registry: CapabilityRegistry | None = None
) -> ExecutionEngine:
    return ExecutionEngine(
        ["ledger"],
        registry=registry or CapabilityRegistry(),
        gateway=ScriptedGateway(default=GatewayResponse.answer("ok")),
        identity=identity,
        limits=limits,
    )


class TestAdmission:
    @pytest.mark.asyncio
    async def test_reject_mode(self, identity: Ed25519IdentityProvider, limits: EngineLimits) -> None:
        engine = answering_engine(identity, replace(limits, max_concurrent_tasks=1))

        first = await engine.submit("ledger", "one")
        with pytest.raises(EngineSaturated):
            await engine.submit("ledger", "two")
        assert get_metrics_registry().snapshot().tasks_rejected == 1

        await engine.run(first)
        second = await engine.submit("ledger", "two")
        assert engine.get_status(second) is TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_tasks_release_their_slot(
        self, identity: Ed25519IdentityProvider, limits: EngineLimits
    ) -> None:
        engine = answering_engine(identity, replace(limits, max_concurrent_tasks=1))

        first = await engine.submit("ledger", "one")
        await engine.cancel(first)
        await engine.submit("ledger", "two")
        assert engine.active_tasks == 1

    @pytest.mark.asyncio
    async def test_block_mode_times_out(
        self, identity: Ed25519IdentityProvider, limits: EngineLimits
    ) -> None:
        engine = answering_engine(
            identity,
            replace(limits, max_concurrent_tasks=1, admission_mode="block", admission_timeout_s=0.05),
        )

        await engine.submit("ledger", "one")
        with pytest.raises(EngineSaturated):
            await engine.submit("ledger", "two")

    @pytest.mark.asyncio
    async def test_block_mode_waits_for_a_slot(
        self, identity: Ed25519IdentityProvider, limits: EngineLimits
    ) -> None:
        engine = answering_engine(
            identity,
            replace(limits, max_concurrent_tasks=1, admission_mode="block", admission_timeout_s=5),
        )

        first = await engine.submit("ledger", "one")
        waiting = asyncio.create_task(engine.submit("ledger", "two"))
        await asyncio.sleep(0)
        assert not waiting.done()

        await engine.run(first)
        second = await asyncio.wait_for(waiting, timeout=5)
        assert engine.get_status(second) is TaskStatus.PENDING


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_pending_task(self, identity: Ed25519IdentityProvider, limits: EngineLimits) -> None:
        engine = answering_engine(identity, limits)
        task_id = await engine.submit("ledger", "one")

        assert await engine.cancel(task_id) is True
        outcome = engine.get_result(task_id)
        assert outcome.status is TaskStatus.FAILED
        assert outcome.error is not None
        assert outcome.error.kind == "TaskCancelled"

        assert await engine.cancel(task_id) is False
        assert await engine.step(task_id) is TaskStatus.FAILED
        with pytest.raises(TaskNotFound):
            await engine.cancel("task-missing")

    @pytest.mark.asyncio
    async def test_cancel_completed_task(self, identity: Ed25519IdentityProvider, limits: EngineLimits) -> None:
        engine = answering_engine(identity, limits)
        outcome = await engine.execute("ledger", "one")
        assert await engine.cancel(outcome.task_id) is False
        assert engine.get_result(outcome.task_id).ok

    @pytest.mark.asyncio
    async def test_cancel_during_capability_discards_result(
        self,
        identity: Ed25519IdentityProvider,
        limits: EngineLimits,
        tmp_path: Path,
        run_events: Callable[[str], list[dict[str, Any]]],
    ) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_lookup(arguments: dict[str, Any]) -> dict[str, int]:
            started.set()
            await release.wait()
            return {"balance": 100}

        registry = CapabilityRegistry()
        registry.register(CapabilityDescriptor(name="slow_lookup", kind="tool"), slow_lookup)
        gateway = ScriptedGateway(
            [
                GatewayResponse.invoke("slow_lookup", {}, invocation_id="call-1"),
                GatewayResponse.answer("Alice has 100"),
            ]
        )
        engine = ExecutionEngine(
            ["ledger"],
            registry=registry,
            gateway=gateway,
            identity=identity,
            limits=limits,
            runs_dir=tmp_path,
        )

        task_id = await engine.submit("ledger", "What is Alice's balance?")
        job = asyncio.create_task(engine.run(task_id))
        await asyncio.wait_for(started.wait(), timeout=5)

        assert engine.get_status(task_id) is TaskStatus.AWAITING_CAPABILITY
        with pytest.raises(InvalidTransition):
            await engine.step(task_id)

        assert await engine.cancel(task_id) is True
        release.set()
        outcome = await asyncio.wait_for(job, timeout=5)

        assert outcome.status is TaskStatus.FAILED
        assert outcome.error is not None
        assert outcome.error.kind == "TaskCancelled"
        assert outcome.output is None
        assert gateway.calls == 1
        assert [entry for entry in run_events(task_id) if entry["event"] == "capability_result"] == []

    @pytest.mark.asyncio
    async def test_asyncio_cancellation_fails_task(
        self, identity: Ed25519IdentityProvider, limits: EngineLimits
    ) -> None:
        started = asyncio.Event()

        async def hang(arguments: dict[str, Any]) -> None:
            started.set()
            await asyncio.Event().wait()

        registry = CapabilityRegistry()
        registry.register(CapabilityDescriptor(name="hang", kind="tool"), hang)
        engine = ExecutionEngine(
            ["ledger"],
            registry=registry,
            gateway=ScriptedGateway([GatewayResponse.invoke("hang", {}, invocation_id="call-1")]),
            identity=identity,
            limits=limits,
        )

        task_id = await engine.submit("ledger", "hang")
        job = asyncio.create_task(engine.run(task_id))
        await asyncio.wait_for(started.wait(), timeout=5)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

        outcome = engine.get_result(task_id)
        assert outcome.error is not None
        assert outcome.error.kind == "TaskCancelled"
        assert engine.active_tasks == 0
