"""Perpetual agent memory: embeddings, vector store and manager."""

from tessera.memory.embedding import Embedder, HashEmbedder
from tessera.memory.manager import MemoryManager
from tessera.memory.store import InMemoryVectorStore, ScoredRecord, VectorStore

__all__ = [
    "Embedder",
    "HashEmbedder",
    "InMemoryVectorStore",
    "MemoryManager",
    "ScoredRecord",
    "VectorStore",
]
