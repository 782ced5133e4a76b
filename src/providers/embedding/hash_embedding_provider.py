"""Deterministic offline embedding provider.

Derives a unit vector from the SHA-256 of each token in the text (a
feature-hashing bag of words), so identical texts always map to identical
vectors and texts sharing vocabulary land close together.  Used in
development, in tests, and whenever no API key is configured.  The
vectors carry no real semantics.
"""

from __future__ import annotations

import hashlib
import re

import numpy as np
import structlog

from src.interfaces.embedding_provider import IEmbeddingProvider

logger = structlog.get_logger(logger_name=__name__)

_TOKEN_RE = re.compile(r"\w+")


class HashEmbeddingProvider(IEmbeddingProvider):
    """Feature-hashing embedder with no network dependency.

    Parameters
    ----------
    dimension:
        Length of every returned vector.
    model:
        Name reported by :meth:`get_model_name`; it does not change the
        vectors, only the cache namespace the pipeline uses.
    """

    def __init__(self, dimension: int = 256, model: str = "hash-embedding-v1") -> None:
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self._dimension = dimension
        self._model = model

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        return [self._vectorize(text) for text in texts]

    def _vectorize(self, text: str) -> list[float]:
        vector = np.zeros(self._dimension, dtype=np.float64)
        tokens = _TOKEN_RE.findall(text.lower()) or [text]
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm == 0:
            # Every token cancelled out; fall back to one bucket per text.
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self._dimension] = 1.0
            norm = 1.0
        return (vector / norm).tolist()

    def get_dimension(self) -> int:
        return self._dimension

    def get_model_name(self) -> str:
        return self._model

    def get_provider_name(self) -> str:
        return "hash_embedding"

    def is_available(self) -> bool:
        return True
