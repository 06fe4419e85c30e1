# Path: knowledge/vector_store/linalg.py
# Purpose: Small numpy vector helpers shared by matrices, tag pools, and engines.
# Layer: knowledge/vector_store.
# Details: Normalization, cosine similarity, and Gram-Schmidt style projections on float32 arrays.

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

EPSILON = 1e-10

ArrayLike = Union[np.ndarray, Sequence[float]]


def as_vector(values: ArrayLike) -> np.ndarray:
    """Return a 1-D float32 copy of the given values."""

    return np.asarray(values, dtype=np.float32).reshape(-1)


def normalize(vector: ArrayLike) -> np.ndarray:
    """Normalize to unit length; zero vectors are returned unchanged."""

    array = as_vector(vector)
    norm = float(np.linalg.norm(array))
    if norm <= EPSILON:
        return array
    return (array / norm).astype(np.float32)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Row-wise unit normalization that leaves all-zero rows untouched."""

    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms <= EPSILON] = 1.0
    return (matrix / norms).astype(np.float32)


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Cosine similarity of two vectors; 0.0 when either is zero or the lengths differ."""

    left, right = as_vector(a), as_vector(b)
    if left.shape != right.shape:
        return 0.0
    denom = float(np.linalg.norm(left) * np.linalg.norm(right))
    if denom <= EPSILON:
        return 0.0
    return float(np.dot(left, right) / denom)


def projection_coeff(vector: ArrayLike, basis: ArrayLike) -> float:
    """Coefficient of the projection of ``vector`` onto ``basis``."""

    v, base = as_vector(vector), as_vector(basis)
    norm_sq = float(np.dot(base, base))
    if norm_sq < EPSILON:
        return 0.0
    return float(np.dot(v, base) / norm_sq)


def project_onto(vector: ArrayLike, basis: ArrayLike) -> np.ndarray:
    """Projection of ``vector`` onto the direction of ``basis``."""

    base = as_vector(basis)
    return (base * projection_coeff(vector, base)).astype(np.float32)


__all__ = ["as_vector", "cosine_similarity", "normalize", "normalize_rows", "project_onto", "projection_coeff"]
