"""Embedding adapters used by the memory manager."""

from __future__ import annotations

import hashlib
import re
from typing import List, Protocol, Sequence

import numpy as np

_TOKEN_RE = re.compile(r"[\w']+", re.UNICODE)


class Embedder(Protocol):
    """Turns text into fixed-size vectors."""

    @property
    def ndims(self) -> int:
        ...

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        ...


class HashEmbedder:
    """Deterministic feature-hashing embedder.

    Each lowercase token is hashed into a signed bucket, so texts sharing
    words land close together under cosine similarity. No model download is
    needed, which keeps tests and cold starts cheap.
    """

    def __init__(self, dim: int = 256) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim

    @property
    def ndims(self) -> int:
        return self.dim

    def _embed_one(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        """Generate embeddings for texts as a (len(texts), dim) array."""
        rows: List[np.ndarray] = [self._embed_one(text) for text in texts]
        if not rows:
            return np.zeros((0, self.dim), dtype=np.float32)
        return np.vstack(rows)


__all__ = ["Embedder", "HashEmbedder"]
