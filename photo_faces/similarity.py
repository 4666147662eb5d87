"""
Vector similarity helpers for face embeddings.

All functions accept any sequence of floats (lists or numpy arrays) and never
raise on malformed input: mismatched or empty vectors simply compare as
dissimilar.
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

#: Length of the identity embeddings produced by the embedding model.
EMBEDDING_DIM = 512

#: Default cosine similarity threshold for :func:`faces_match`.
DEFAULT_MATCH_THRESHOLD = 0.5

#: Returned by :func:`embedding_distance` when the vectors cannot be compared.
MAX_DISTANCE = float(np.finfo(np.float32).max)

Vector = Union[Sequence[float], np.ndarray]


def _as_array(v: Vector) -> np.ndarray:
    return np.asarray(v, dtype=np.float64).ravel()


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity in ``[-1, 1]``.

    Returns ``0.0`` when the vectors differ in length, are empty, or either
    has zero norm.
    """
    a = _as_array(a)
    b = _as_array(b)
    if a.size == 0 or a.size != b.size:
        return 0.0
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def embedding_distance(a: Vector, b: Vector) -> float:
    """Euclidean distance, or :data:`MAX_DISTANCE` on length mismatch."""
    a = _as_array(a)
    b = _as_array(b)
    if a.size != b.size:
        return MAX_DISTANCE
    return float(np.linalg.norm(a - b))


def faces_match(a: Vector, b: Vector, threshold: float = DEFAULT_MATCH_THRESHOLD) -> bool:
    """Whether two embeddings likely belong to the same person."""
    return cosine_similarity(a, b) > threshold


def l2_normalize(v: Vector) -> np.ndarray:
    """Return ``v / ||v||`` as float32; a zero vector is returned unchanged."""
    arr = np.asarray(v, dtype=np.float32).ravel()
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr
    return arr / norm
