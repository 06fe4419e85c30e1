# Path: knowledge/search/tag_sea.py
# Purpose: Per-query join of a collection's tag usage with the model tag pool.
# Layer: knowledge/search.
# Details: Built fresh inside each search and discarded afterwards; never cached or shared.

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from knowledge.models.domain import Aku
from knowledge.vector_store.linalg import normalize
from knowledge.vector_store.tag_pool import ModelTagPool


class TagSea:
    """Tag to AKU weights, syntactic weights, and rarity weights for one collection.

    ``entropy_weights[tag] = ln(N / (df + 1)) + 1`` where N is the number of AKUs and df the number
    of AKU references to the tag.
    """

    def __init__(
        self,
        pool: ModelTagPool,
        tag_to_akus: Dict[str, List[Tuple[str, float]]],
        syntax_weights: Dict[str, float],
        entropy_weights: Dict[str, float],
    ) -> None:
        self.pool = pool
        self.tag_to_akus = tag_to_akus
        self.syntax_weights = syntax_weights
        self.entropy_weights = entropy_weights

    @classmethod
    def build(cls, akus: Iterable[Aku], pool: ModelTagPool) -> "TagSea":
        tag_to_akus: Dict[str, List[Tuple[str, float]]] = {}
        syntax_weights: Dict[str, float] = {}
        total = 0
        for aku in akus:
            total += 1
            for tag in aku.tags:
                tag_to_akus.setdefault(tag.name, []).append((aku.id, tag.weight))
                if tag.weight > syntax_weights.get(tag.name, 0.0):
                    syntax_weights[tag.name] = tag.weight
                else:
                    syntax_weights.setdefault(tag.name, 0.0)

        entropy_weights = {
            name: math.log(total / (len(refs) + 1.0)) + 1.0 for name, refs in tag_to_akus.items()
        }
        return cls(pool, tag_to_akus, syntax_weights, entropy_weights)

    def akus_for(self, tag_name: str) -> List[Tuple[str, float]]:
        return self.tag_to_akus.get(tag_name, [])

    def entropy(self, tag_name: str) -> float:
        return self.entropy_weights.get(tag_name, 1.0)

    def compute_lens_center(self, tag_names: Iterable[str]) -> Optional[np.ndarray]:
        """Unit-length centroid of the named tag vectors, weighted by syntax times entropy.

        Returns None when no named tag is in the pool or the pool has no dimension.
        """

        if self.pool.dimension == 0:
            return None
        center = np.zeros(self.pool.dimension, dtype=np.float64)
        total_weight = 0.0
        for name in tag_names:
            vector = self.pool.vector_for(name)
            if vector is None:
                continue
            weight = self.syntax_weights.get(name, 1.0) * self.entropy_weights.get(name, 1.0)
            center += vector * weight
            total_weight += weight
        if total_weight <= 0.0:
            return None
        return normalize(center / total_weight)


__all__ = ["TagSea"]
