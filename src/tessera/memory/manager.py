"""Memory manager: embeds, signs, stores and recalls agent memories."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from tessera.core.types import MemoryRecord
from tessera.identity.provider import IdentityProvider, canonical_bytes
from tessera.memory.embedding import Embedder, HashEmbedder
from tessera.memory.store import ScoredRecord, VectorStore

logger = logging.getLogger(__name__)

# Extra candidates fetched per query so tombstoned hits can be dropped
# without starving the result list.
_OVERFETCH = 4


class MemoryManager:
    """
    Front door to a VectorStore for the execution engine.

    Recall is tolerant: a failing store yields an empty list and a warning,
    never an exception. Writes are strict: ``remember`` raises if the record
    could not be stored, so the engine can fail the task instead of
    reporting a completion that left no memory behind.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Optional[Embedder] = None,
        identity: Optional[IdentityProvider] = None,
        *,
        cache_ttl_s: float = 30.0,
        max_cache_entries: int = 256,
        sign_records: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.embedder = embedder or HashEmbedder()
        self.identity = identity
        self.cache_ttl_s = cache_ttl_s
        self.max_cache_entries = max_cache_entries
        self.sign_records = sign_records
        self._clock = clock
        self._cache: Dict[Tuple[str, str, int], Tuple[float, List[ScoredRecord]]] = {}
        self._superseded: Set[str] = set()

    def _embed(self, text: str) -> tuple[float, ...]:
        return tuple(float(value) for value in self.embedder.encode([text])[0])

    def invalidate(self) -> None:
        self._cache.clear()

    async def recall(self, agent_id: str, text: str, k: int) -> List[ScoredRecord]:
        """Top-``k`` live records of ``agent_id`` most similar to ``text``.

        Ordered by score descending, ties broken by recency.
        """
        if k <= 0:
            return []

        key = (agent_id, text, k)
        cached = self._cache.get(key)
        now = time.monotonic()
        if cached is not None and cached[0] > now:
            return list(cached[1])

        try:
            hits = await self.store.query(self._embed(text), k * _OVERFETCH, agent_id=agent_id)
        except Exception as exc:
            logger.warning("Memory recall failed for agent %s: %s", agent_id, exc)
            return []

        for record, _ in hits:
            if record.tombstone and record.supersedes:
                self._superseded.add(record.supersedes)

        live = [
            (record, score)
            for record, score in hits
            if record.agent_id == agent_id
            and not record.tombstone
            and record.id not in self._superseded
        ]
        live.sort(key=lambda item: (-item[1], -item[0].timestamp))
        results = live[:k]

        if self.cache_ttl_s > 0:
            self._store_cached(key, now, results)
        return list(results)

    def _store_cached(
        self, key: Tuple[str, str, int], now: float, results: List[ScoredRecord]
    ) -> None:
        expired = [item for item, (expires, _) in self._cache.items() if expires <= now]
        for item in expired:
            del self._cache[item]
        while len(self._cache) >= self.max_cache_entries:
            # oldest query first
            del self._cache[next(iter(self._cache))]
        self._cache[key] = (now + self.cache_ttl_s, results)

    async def remember(
        self,
        *,
        agent_id: str,
        content: str,
        task_id: Optional[str] = None,
    ) -> MemoryRecord:
        """Embed, optionally sign, and durably store a new record."""
        record = MemoryRecord(
            id=f"mem-{uuid.uuid4().hex}",
            agent_id=agent_id,
            embedding=self._embed(content),
            content=content,
            timestamp=self._clock(),
            task_id=task_id,
        )
        record = await self._sign(record)
        await self.store.put(record)
        self.invalidate()
        logger.debug("Stored memory %s for agent %s", record.id, agent_id)
        return record

    async def forget(self, record_id: str, *, agent_id: str) -> MemoryRecord:
        """Logically delete ``record_id`` by appending a tombstone."""
        target = await self.store.get(record_id)
        if target is None:
            raise KeyError(f"Memory record '{record_id}' not found")
        if target.agent_id != agent_id:
            raise PermissionError(f"Memory record '{record_id}' is not owned by {agent_id}")

        tombstone = MemoryRecord(
            id=f"mem-{uuid.uuid4().hex}",
            agent_id=agent_id,
            embedding=target.embedding,
            content="",
            timestamp=self._clock(),
            task_id=target.task_id,
            tombstone=True,
            supersedes=record_id,
        )
        tombstone = await self._sign(tombstone)
        await self.store.put(tombstone)
        self._superseded.add(record_id)
        self.invalidate()
        return tombstone

    async def verify(self, record: MemoryRecord) -> bool:
        """Check a record's provenance signature."""
        if record.signature is None or self.identity is None:
            return False
        return await self.identity.verify(record.signature, canonical_bytes(record.provenance_payload()))

    async def _sign(self, record: MemoryRecord) -> MemoryRecord:
        if not self.sign_records or self.identity is None:
            return record
        signature = await self.identity.sign(
            record.agent_id, canonical_bytes(record.provenance_payload())
        )
        return record.model_copy(update={"signature": signature})


__all__ = ["MemoryManager"]
