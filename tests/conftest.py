"""Pytest configuration helpers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from tessera.core.types import CapabilityDescriptor
from tessera.identity.provider import Ed25519IdentityProvider
from tessera.memory.embedding import HashEmbedder
from tessera.memory.manager import MemoryManager
from tessera.memory.store import InMemoryVectorStore
from tessera.registry import CapabilityRegistry
from tessera.settings import EngineLimits

BALANCE_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"account": {"type": "string"}},
    "required": ["account"],
    "additionalProperties": False,
}

BALANCE_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"balance": {"type": "integer"}},
    "required": ["balance"],
}


@pytest.fixture(autouse=True)
def reset_engine_caches() -> Iterator[None]:
    """Clear engine configuration caches between tests."""
    from tessera import settings

    settings.get_engine_settings.cache_clear()
    try:
        yield
    finally:
        settings.get_engine_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_observability_metrics() -> Iterator[None]:
    from tessera.observability.metrics import reset_metrics

    reset_metrics()
    try:
        yield
    finally:
        reset_metrics()


@pytest.fixture
def limits() -> EngineLimits:
    """Engine limits with backoff disabled so retry tests run instantly."""
    return EngineLimits(
        max_steps=8,
        max_retries=3,
        backoff_base_ms=0,
        backoff_max_ms=0,
        max_delegation_depth=4,
        max_concurrent_tasks=8,
        memory_top_k=3,
    )


@pytest.fixture
def identity() -> Ed25519IdentityProvider:
    return Ed25519IdentityProvider(master_seed=bytes(range(32)))


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def memory(store: InMemoryVectorStore, identity: Ed25519IdentityProvider) -> MemoryManager:
    return MemoryManager(store, HashEmbedder(dim=64), identity, cache_ttl_s=0)


@pytest.fixture
def run_events(tmp_path: Path) -> Callable[[str], list[dict[str, Any]]]:
    """Read the logs.jsonl entries an engine with ``runs_dir=tmp_path`` wrote for a task."""

    def read(task_id: str) -> list[dict[str, Any]]:
        lines = (tmp_path / task_id / "logs.jsonl").read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines]

    return read


@pytest.fixture
def balance_calls() -> list[dict[str, Any]]:
    return []


@pytest.fixture
def registry(balance_calls: list[dict[str, Any]]) -> CapabilityRegistry:
    """Registry with a ``balance_of`` ledger tool that always reports 100."""

    async def balance_of(arguments: dict[str, Any]) -> dict[str, int]:
        balance_calls.append(arguments)
        return {"balance": 100}

    registry = CapabilityRegistry()
    registry.register(
        CapabilityDescriptor(
            name="balance_of",
            kind="tool",
            description="Return the balance of an account",
            input_schema=BALANCE_INPUT_SCHEMA,
            output_schema=BALANCE_OUTPUT_SCHEMA,
        ),
        balance_of,
    )
    return registry
