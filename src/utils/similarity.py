"""Vector math for retrieval, duplicate detection and clustering.

Pure functions over fixed-length numeric vectors, backed by numpy.  Inputs
may be lists, tuples or arrays; they are never mutated.  Every function
that takes two vectors raises :class:`~src.utils.errors.DimensionMismatchError`
when their lengths differ.

Distances are turned into similarities with ``1 / (1 + d)`` so that every
:class:`SimilarityMethod` ranks "higher is closer".
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import NamedTuple

import numpy as np

from src.utils.errors import DimensionMismatchError

Vector = Sequence[float]


class SimilarityMethod(str, Enum):  # noqa: UP042
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"


class ScoredIndex(NamedTuple):
    """A candidate's position in the input list and its similarity score."""

    index: int
    score: float


@dataclass(frozen=True)
class VectorCluster:
    """Members of one greedy cluster.

    Attributes
    ----------
    indices:
        Positions of member vectors in the input list; the seed comes first.
    centroid:
        Element-wise mean of the member vectors.
    """

    indices: tuple[int, ...]
    centroid: tuple[float, ...]

    @property
    def size(self) -> int:
        return len(self.indices)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _as_array(vector: Vector) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64)


def _check_same_length(a: Vector, b: Vector) -> None:
    if len(a) != len(b):
        raise DimensionMismatchError(
            f"Vectors must have the same dimension: {len(a)} != {len(b)}"
        )


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def dot_product(a: Vector, b: Vector) -> float:
    _check_same_length(a, b)
    return float(np.dot(_as_array(a), _as_array(b)))


def magnitude(vector: Vector) -> float:
    return float(np.linalg.norm(_as_array(vector)))


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``, or 0.0 if either vector has zero norm."""
    _check_same_length(a, b)
    arr_a = _as_array(a)
    arr_b = _as_array(b)
    norm_a = np.linalg.norm(arr_a)
    norm_b = np.linalg.norm(arr_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    value = float(np.dot(arr_a, arr_b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, value))


def euclidean_distance(a: Vector, b: Vector) -> float:
    _check_same_length(a, b)
    return float(np.linalg.norm(_as_array(a) - _as_array(b)))


def manhattan_distance(a: Vector, b: Vector) -> float:
    _check_same_length(a, b)
    return float(np.abs(_as_array(a) - _as_array(b)).sum())


def distance_to_similarity(distance: float) -> float:
    """Map a non-negative distance into (0, 1]; identical vectors score 1."""
    return 1.0 / (1.0 + distance)


def similarity(a: Vector, b: Vector, method: SimilarityMethod = SimilarityMethod.COSINE) -> float:
    """Score two vectors with *method*; higher always means more similar."""
    if method == SimilarityMethod.COSINE:
        return cosine_similarity(a, b)
    if method == SimilarityMethod.EUCLIDEAN:
        return distance_to_similarity(euclidean_distance(a, b))
    if method == SimilarityMethod.MANHATTAN:
        return distance_to_similarity(manhattan_distance(a, b))
    raise ValueError(f"Unknown similarity method: {method}")


def normalize(vector: Vector) -> list[float]:
    """Return a unit-length copy of *vector* (a plain copy if its magnitude is 0)."""
    arr = _as_array(vector)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return arr.tolist()
    return (arr / norm).tolist()


def centroid(vectors: Sequence[Vector]) -> list[float]:
    """Element-wise mean of *vectors*."""
    if not vectors:
        raise ValueError("Cannot compute the centroid of zero vectors")
    first = vectors[0]
    for other in vectors[1:]:
        _check_same_length(first, other)
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()


def is_valid_vector(vector: object, dimensions: int | None = None) -> bool:
    """Return ``True`` if *vector* is a sequence of finite real numbers.

    When *dimensions* is given the length must match exactly.  Booleans are
    rejected even though ``bool`` subclasses ``int``.
    """
    if isinstance(vector, np.ndarray):
        vector = vector.tolist()
    if not isinstance(vector, (list, tuple)) or not vector:
        return False
    if dimensions is not None and len(vector) != dimensions:
        return False
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, Real):
            return False
        if not math.isfinite(value):
            return False
    return True


# ---------------------------------------------------------------------------
# Ranking and grouping
# ---------------------------------------------------------------------------


def _score_all(
    query: Vector,
    candidates: Sequence[Vector],
    method: SimilarityMethod,
) -> np.ndarray:
    for candidate in candidates:
        _check_same_length(query, candidate)
    q = _as_array(query)
    matrix = np.asarray(candidates, dtype=np.float64)

    if method == SimilarityMethod.COSINE:
        norms = np.linalg.norm(matrix, axis=1)
        q_norm = np.linalg.norm(q)
        dots = matrix @ q
        denom = norms * q_norm
        scores = np.zeros(len(candidates), dtype=np.float64)
        nonzero = denom > 0
        scores[nonzero] = dots[nonzero] / denom[nonzero]
        return np.clip(scores, -1.0, 1.0)
    if method == SimilarityMethod.EUCLIDEAN:
        return 1.0 / (1.0 + np.linalg.norm(matrix - q, axis=1))
    if method == SimilarityMethod.MANHATTAN:
        return 1.0 / (1.0 + np.abs(matrix - q).sum(axis=1))
    raise ValueError(f"Unknown similarity method: {method}")


def top_k(
    query: Vector,
    candidates: Sequence[Vector],
    k: int,
    method: SimilarityMethod = SimilarityMethod.COSINE,
) -> list[ScoredIndex]:
    """Return the *k* highest-scoring candidates, best first.

    Ties keep the candidates' original order, so the ranking is stable.
    """
    if k <= 0 or not candidates:
        return []
    scores = _score_all(query, candidates, method)
    order = sorted(range(len(candidates)), key=lambda i: (-scores[i], i))
    return [ScoredIndex(index=i, score=float(scores[i])) for i in order[:k]]


def similarity_matrix(
    vectors: Sequence[Vector],
    method: SimilarityMethod = SimilarityMethod.COSINE,
) -> list[list[float]]:
    """Pairwise similarity of every vector against every other."""
    if not vectors:
        return []
    return [_score_all(v, vectors, method).tolist() for v in vectors]


def cluster_by_similarity(
    vectors: Sequence[Vector],
    threshold: float,
    method: SimilarityMethod = SimilarityMethod.COSINE,
) -> list[VectorCluster]:
    """Single-pass greedy clustering.

    Each unassigned vector seeds a cluster; every later unassigned vector
    whose similarity to the seed is at least *threshold* joins it.
    """
    if not vectors:
        return []
    dims = len(vectors[0])
    for other in vectors[1:]:
        if len(other) != dims:
            raise DimensionMismatchError(
                f"Vectors must have the same dimension: {dims} != {len(other)}"
            )

    assigned = [False] * len(vectors)
    clusters: list[VectorCluster] = []
    for seed in range(len(vectors)):
        if assigned[seed]:
            continue
        assigned[seed] = True
        members = [seed]
        for other in range(seed + 1, len(vectors)):
            if assigned[other]:
                continue
            if similarity(vectors[seed], vectors[other], method) >= threshold:
                assigned[other] = True
                members.append(other)
        clusters.append(
            VectorCluster(
                indices=tuple(members),
                centroid=tuple(centroid([vectors[i] for i in members])),
            )
        )
    return clusters
