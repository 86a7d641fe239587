"""Vector store adapters for agent memory.

The store is a plain key/vector service: it appends records and answers
nearest-neighbour queries. Tombstone and ownership semantics live in
``MemoryManager``.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

import anyio.to_thread
import numpy as np

from tessera.core.types import MemoryRecord

logger = logging.getLogger(__name__)

ScoredRecord = Tuple[MemoryRecord, float]


class VectorStore(Protocol):
    """Append-only record storage with similarity search."""

    async def put(self, record: MemoryRecord) -> None:
        ...

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        ...

    async def query(
        self,
        embedding: Sequence[float],
        k: int,
        *,
        agent_id: Optional[str] = None,
    ) -> List[ScoredRecord]:
        ...


class InMemoryVectorStore:
    """
    Numpy-backed vector store with optional JSONL persistence.

    Embeddings are kept L2-normalised in a single matrix so a query is one
    dot product. Writers are serialised by a lock; readers work on whatever
    (records, matrix) pair was last published, so a query never observes a
    half-applied put.
    """

    def __init__(self, persist_path: Optional[Path] = None) -> None:
        self.persist_path = persist_path
        self._lock = threading.Lock()
        self._records: Tuple[MemoryRecord, ...] = ()
        self._matrix: Optional[np.ndarray] = None
        self._index: dict[str, MemoryRecord] = {}

        if persist_path is not None and persist_path.exists():
            self._load(persist_path)

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _normalise(embedding: Sequence[float]) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32)
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector

    def _append(self, record: MemoryRecord) -> None:
        if record.id in self._index:
            raise ValueError(f"Memory record '{record.id}' already exists")
        row = self._normalise(record.embedding).reshape(1, -1)
        if self._matrix is not None and self._matrix.shape[1] != row.shape[1]:
            raise ValueError(
                f"Embedding dimension {row.shape[1]} does not match store dimension {self._matrix.shape[1]}"
            )
        matrix = row if self._matrix is None else np.vstack([self._matrix, row])
        self._index[record.id] = record
        # Publish records and matrix together for readers
        self._records, self._matrix = self._records + (record,), matrix

    def _put_sync(self, record: MemoryRecord) -> None:
        with self._lock:
            if record.id in self._index:
                raise ValueError(f"Memory record '{record.id}' already exists")
            if self.persist_path is not None:
                self._persist(record)
            self._append(record)

    async def put(self, record: MemoryRecord) -> None:
        """Append a record; it is durable once this returns."""
        if self.persist_path is None:
            self._put_sync(record)
            return
        await anyio.to_thread.run_sync(self._put_sync, record)

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        return self._index.get(record_id)

    async def query(
        self,
        embedding: Sequence[float],
        k: int,
        *,
        agent_id: Optional[str] = None,
    ) -> List[ScoredRecord]:
        """Return up to ``k`` records by cosine similarity, newest first on ties."""
        records, matrix = self._records, self._matrix
        if k <= 0 or matrix is None or not records:
            return []

        vector = self._normalise(embedding)
        if vector.shape[0] != matrix.shape[1]:
            raise ValueError(
                f"Query dimension {vector.shape[0]} does not match store dimension {matrix.shape[1]}"
            )
        scores = matrix @ vector

        scored = [
            (record, float(score))
            for record, score in zip(records, scores)
            if agent_id is None or record.agent_id == agent_id
        ]
        scored.sort(key=lambda item: (-item[1], -item[0].timestamp))
        return scored[:k]

    def _persist(self, record: MemoryRecord) -> None:
        assert self.persist_path is not None
        self.persist_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n"
        with open(self.persist_path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def _load(self, path: Path) -> None:
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = MemoryRecord.model_validate(json.loads(line))
                except ValueError as exc:
                    logger.warning("Skipping corrupt memory line %d in %s: %s", lineno, path, exc)
                    continue
                self._append(record)
        logger.info("Loaded %d memory records from %s", len(self._records), path)


__all__ = ["InMemoryVectorStore", "ScoredRecord", "VectorStore"]
