"""Tests for vector memory: recall ordering, tombstones, signing and persistence."""

from __future__ import annotations

import itertools
import json
from pathlib import Path
from typing import Any, List, Optional, Sequence

import numpy as np
import pytest

from tessera.core.types import MemoryRecord
from tessera.identity.provider import Ed25519IdentityProvider
from tessera.memory.embedding import HashEmbedder
from tessera.memory.manager import MemoryManager
from tessera.memory.store import InMemoryVectorStore, ScoredRecord


class FailingStore:
    """Store whose every operation raises."""

    async def put(self, record: MemoryRecord) -> None:
        raise OSError("disk full")

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        raise OSError("disk unreadable")

    async def query(
        self, embedding: Sequence[float], k: int, *, agent_id: Optional[str] = None
    ) -> List[ScoredRecord]:
        raise OSError("disk unreadable")


class CountingStore(InMemoryVectorStore):
    def __init__(self) -> None:
        super().__init__()
        self.queries = 0

    async def query(self, embedding: Sequence[float], k: int, *, agent_id: Optional[str] = None) -> List[ScoredRecord]:
        self.queries += 1
        return await super().query(embedding, k, agent_id=agent_id)


@pytest.fixture
def ticking_clock() -> Any:
    ticks = itertools.count(1000)
    return lambda: float(next(ticks))


def _record(record_id: str, agent_id: str, vector: Sequence[float], timestamp: float) -> MemoryRecord:
    return MemoryRecord(
        id=record_id,
        agent_id=agent_id,
        embedding=tuple(vector),
        content=record_id,
        timestamp=timestamp,
    )


class TestHashEmbedder:
    def test_shape_and_norm(self) -> None:
        embedder = HashEmbedder(dim=32)
        vectors = embedder.encode(["alice balance", "weather in paris"])
        assert vectors.shape == (2, 32)
        assert np.linalg.norm(vectors[0]) == pytest.approx(1.0, rel=1e-5)

    def test_deterministic_and_case_insensitive(self) -> None:
        embedder = HashEmbedder(dim=32)
        first = embedder.encode(["Alice Balance"])[0]
        second = embedder.encode(["alice balance"])[0]
        assert np.allclose(first, second)

    def test_empty_inputs(self) -> None:
        embedder = HashEmbedder(dim=8)
        assert embedder.encode([]).shape == (0, 8)
        assert not embedder.encode([""])[0].any()


class TestInMemoryVectorStore:
    @pytest.mark.asyncio
    async def test_query_orders_by_score_then_recency(self) -> None:
        store = InMemoryVectorStore()
        await store.put(_record("old", "a", (1.0, 0.0), 1.0))
        await store.put(_record("new", "a", (2.0, 0.0), 2.0))
        await store.put(_record("other", "a", (0.0, 1.0), 3.0))

        hits = await store.query((1.0, 0.0), 3)
        assert [record.id for record, _ in hits] == ["new", "old", "other"]
        assert hits[0][1] == pytest.approx(1.0)
        assert hits[2][1] == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_query_filters_agent_and_limits_k(self) -> None:
        store = InMemoryVectorStore()
        await store.put(_record("mine", "a", (1.0, 0.0), 1.0))
        await store.put(_record("theirs", "b", (1.0, 0.0), 2.0))

        hits = await store.query((1.0, 0.0), 5, agent_id="a")
        assert [record.id for record, _ in hits] == ["mine"]
        assert await store.query((1.0, 0.0), 0) == []

    @pytest.mark.asyncio
    async def test_rejects_duplicates_and_dimension_mismatch(self) -> None:
        store = InMemoryVectorStore()
        await store.put(_record("r1", "a", (1.0, 0.0), 1.0))
        with pytest.raises(ValueError, match="already exists"):
            await store.put(_record("r1", "a", (1.0, 0.0), 2.0))
        with pytest.raises(ValueError):
            await store.put(_record("r2", "a", (1.0, 0.0, 0.0), 2.0))
        with pytest.raises(ValueError):
            await store.query((1.0, 0.0, 0.0), 1)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_persistence_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "memory" / "records.jsonl"
        store = InMemoryVectorStore(persist_path=path)
        await store.put(_record("r1", "a", (1.0, 0.0), 1.0))
        await store.put(_record("r2", "a", (0.0, 1.0), 2.0))

        with open(path, "a", encoding="utf-8") as f:
            f.write("{not json\n")

        reloaded = InMemoryVectorStore(persist_path=path)
        assert len(reloaded) == 2
        record = await reloaded.get("r2")
        assert record is not None
        assert json.loads(path.read_text(encoding="utf-8").splitlines()[0])["id"] == "r1"


class TestMemoryManager:
    @pytest.fixture
    def manager(
        self, identity: Ed25519IdentityProvider, ticking_clock: Any
    ) -> MemoryManager:
        return MemoryManager(
            InMemoryVectorStore(), HashEmbedder(), identity, cache_ttl_s=0, clock=ticking_clock
        )

    @pytest.mark.asyncio
    async def test_recall_most_similar_first(self, manager: MemoryManager) -> None:
        await manager.remember(agent_id="ledger", content="alice balance is 100")
        await manager.remember(agent_id="ledger", content="weather in paris is sunny")

        hits = await manager.recall("ledger", "what is alice balance", 2)
        assert hits[0][0].content == "alice balance is 100"
        assert hits[0][1] > hits[1][1]

    @pytest.mark.asyncio
    async def test_recall_ties_prefer_recent(self, manager: MemoryManager) -> None:
        first = await manager.remember(agent_id="ledger", content="alice balance")
        second = await manager.remember(agent_id="ledger", content="alice balance")

        hits = await manager.recall("ledger", "alice balance", 2)
        assert [record.id for record, _ in hits] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_recall_never_returns_foreign_records(self, manager: MemoryManager) -> None:
        await manager.remember(agent_id="auditor", content="alice balance is 100")
        assert await manager.recall("ledger", "alice balance", 5) == []

    @pytest.mark.asyncio
    async def test_recall_empty_memory(self, manager: MemoryManager) -> None:
        assert await manager.recall("ledger", "anything", 5) == []
        assert await manager.recall("ledger", "anything", 0) == []

    @pytest.mark.asyncio
    async def test_forget_appends_tombstone(self, manager: MemoryManager) -> None:
        record = await manager.remember(agent_id="ledger", content="alice balance is 100")
        tombstone = await manager.forget(record.id, agent_id="ledger")

        assert tombstone.tombstone
        assert tombstone.supersedes == record.id
        assert await manager.store.get(record.id) == record
        assert await manager.recall("ledger", "alice balance", 5) == []

    @pytest.mark.asyncio
    async def test_forget_checks_ownership(self, manager: MemoryManager) -> None:
        record = await manager.remember(agent_id="ledger", content="alice balance")
        with pytest.raises(PermissionError):
            await manager.forget(record.id, agent_id="auditor")
        with pytest.raises(KeyError):
            await manager.forget("mem-missing", agent_id="ledger")

    @pytest.mark.asyncio
    async def test_records_are_signed(self, manager: MemoryManager) -> None:
        record = await manager.remember(agent_id="ledger", content="alice balance", task_id="task-1")
        assert record.signature is not None
        assert record.signature.signer == "ledger"
        assert await manager.verify(record)

        tampered = record.model_copy(update={"content": "alice balance is 1000000"})
        assert not await manager.verify(tampered)

    @pytest.mark.asyncio
    async def test_unsigned_records(self, identity: Ed25519IdentityProvider) -> None:
        manager = MemoryManager(InMemoryVectorStore(), HashEmbedder(dim=16), identity, sign_records=False)
        record = await manager.remember(agent_id="ledger", content="note")
        assert record.signature is None
        assert not await manager.verify(record)

    @pytest.mark.asyncio
    async def test_recall_tolerates_store_failure(self, caplog: pytest.LogCaptureFixture) -> None:
        manager = MemoryManager(FailingStore(), HashEmbedder(dim=16))
        with caplog.at_level("WARNING"):
            assert await manager.recall("ledger", "alice", 3) == []
        assert "Memory recall failed" in caplog.text

    @pytest.mark.asyncio
    async def test_remember_propagates_store_failure(self) -> None:
        manager = MemoryManager(FailingStore(), HashEmbedder(dim=16))
        with pytest.raises(OSError):
            await manager.remember(agent_id="ledger", content="note")

    @pytest.mark.asyncio
    async def test_recall_cache_invalidated_by_writes(self, identity: Ed25519IdentityProvider) -> None:
        store = CountingStore()
        manager = MemoryManager(store, HashEmbedder(dim=16), identity, cache_ttl_s=60)

        await manager.recall("ledger", "alice", 3)
        await manager.recall("ledger", "alice", 3)
        assert store.queries == 1

        await manager.remember(agent_id="ledger", content="alice")
        hits = await manager.recall("ledger", "alice", 3)
        assert store.queries == 2
        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_recall_cache_is_bounded(self, identity: Ed25519IdentityProvider) -> None:
        store = CountingStore()
        manager = MemoryManager(
            store, HashEmbedder(dim=16), identity, cache_ttl_s=60, max_cache_entries=2
        )

        for text in ("alice", "bob", "carol"):
            await manager.recall("ledger", text, 3)
        assert [key[1] for key in manager._cache] == ["bob", "carol"]

        await manager.recall("ledger", "alice", 3)
        assert store.queries == 4
