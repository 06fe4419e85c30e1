# Path: knowledge/vector_store/vector_matrix.py
# Purpose: Per-collection dense vector store keyed by AKU id for the active embedding model.
# Layer: knowledge/vector_store.
# Details: Rows live in one contiguous float32 array with an explicit id-to-position table.

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .linalg import EPSILON, as_vector

logger = logging.getLogger(__name__)


class VectorMatrix:
    """Flat vector store for one (collection, model) pair.

    Invariant: ``data.size == len(ids) * dimension`` after every mutation. The dimension is fixed by
    the first inserted vector and only changes through :meth:`rebuild` or :meth:`clear`.
    """

    def __init__(self) -> None:
        self.model_id: str = ""
        self.dimension: int = 0
        self.total_tokens: int = 0
        self.ids: List[str] = []
        self._positions: Dict[str, int] = {}
        self._rows: np.ndarray = np.empty((0, 0), dtype=np.float32)

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, aku_id: object) -> bool:
        return aku_id in self._positions

    @property
    def data(self) -> np.ndarray:
        """Flat view of every stored component, row after row."""

        return self._rows.reshape(-1)

    @property
    def matrix(self) -> np.ndarray:
        """2-D view with one row per id, ordered like :attr:`ids`."""

        return self._rows

    def rebuild(
        self,
        model_id: str,
        dimension: int,
        total_tokens: int,
        entries: Iterable[Tuple[str, Sequence[float]]],
    ) -> int:
        """Replace the whole state; vectors whose length differs from ``dimension`` are dropped.

        A ``dimension`` of 0 adopts the length of the first entry. Returns the number of vectors kept.
        """

        ids: List[str] = []
        rows: List[np.ndarray] = []
        seen: Dict[str, int] = {}
        dropped = 0
        for aku_id, values in entries:
            vector = as_vector(values)
            if dimension == 0 and vector.size > 0:
                dimension = int(vector.size)
            if vector.size != dimension:
                dropped += 1
                continue
            if aku_id in seen:
                rows[seen[aku_id]] = vector
                continue
            seen[aku_id] = len(ids)
            ids.append(aku_id)
            rows.append(vector)

        if dropped:
            logger.warning("Dropped %d vectors with mismatched dimension while rebuilding %s", dropped, model_id)

        self.model_id = model_id
        self.dimension = dimension
        self.total_tokens = total_tokens
        self.ids = ids
        self._positions = seen
        self._rows = np.vstack(rows).astype(np.float32) if rows else np.empty((0, dimension), dtype=np.float32)
        return len(ids)

    def update_vector(self, aku_id: str, values: Sequence[float]) -> bool:
        """Insert or overwrite the vector for an id; mismatched dimensions are ignored."""

        vector = as_vector(values)
        if vector.size == 0:
            return False
        if self.dimension == 0:
            self.dimension = int(vector.size)
            self._rows = np.empty((0, self.dimension), dtype=np.float32)
        if vector.size != self.dimension:
            logger.warning(
                "Ignoring vector for %s: dimension %d does not match matrix dimension %d",
                aku_id,
                vector.size,
                self.dimension,
            )
            return False

        position = self._positions.get(aku_id)
        if position is not None:
            self._rows[position] = vector
            return True

        self._positions[aku_id] = len(self.ids)
        self.ids.append(aku_id)
        self._rows = np.vstack([self._rows, vector.reshape(1, -1)])
        return True

    def remove_vector(self, aku_id: str) -> bool:
        """Remove an id and shift the tail rows up by one position."""

        position = self._positions.pop(aku_id, None)
        if position is None:
            return False
        del self.ids[position]
        self._rows = np.delete(self._rows, position, axis=0)
        for moved_id in self.ids[position:]:
            self._positions[moved_id] -= 1
        return True

    def get_vector(self, index: int) -> Optional[np.ndarray]:
        """Bounds-checked row view by position."""

        if index < 0 or index >= len(self.ids):
            return None
        return self._rows[index]

    def vector_for(self, aku_id: str) -> Optional[np.ndarray]:
        position = self._positions.get(aku_id)
        return None if position is None else self._rows[position]

    def cosine_scores(self, query: np.ndarray) -> np.ndarray:
        """Cosine similarity of the query against every stored row, clamped to [0, 1]."""

        if not self.ids:
            return np.empty(0, dtype=np.float32)
        query = as_vector(query)
        row_norms = np.linalg.norm(self._rows, axis=1)
        query_norm = float(np.linalg.norm(query))
        denom = row_norms * query_norm
        dots = self._rows @ query
        cos = np.where(denom > EPSILON, dots / np.maximum(denom, EPSILON), 0.0)
        return np.clip(cos, 0.0, 1.0).astype(np.float32)

    def clear(self) -> None:
        self.model_id = ""
        self.dimension = 0
        self.total_tokens = 0
        self.ids = []
        self._positions = {}
        self._rows = np.empty((0, 0), dtype=np.float32)


__all__ = ["VectorMatrix"]
