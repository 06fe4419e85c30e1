"""
Deterministic builders shared by the test modules.
"""

from typing import List

import numpy as np

from knowledge.models.domain import Aku, TagWithWeight

DIM = 8
MODEL = "test-embed-v1"


def axis(index: int, dim: int = DIM) -> List[float]:
    """One-hot unit vector along ``index``."""
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector.tolist()


def mix(*weighted, dim: int = DIM) -> List[float]:
    """Unit vector built from (axis, weight) pairs."""
    vector = np.zeros(dim, dtype=np.float64)
    for index, weight in weighted:
        vector[index] += weight
    return (vector / np.linalg.norm(vector)).tolist()


def make_aku(key: str, content: str, tags=(), priority: int = 100, enabled: bool = True) -> Aku:
    """AKU with weighted tags; tags may be names or (name, weight) pairs."""
    tag_list = []
    for tag in tags:
        if isinstance(tag, tuple):
            tag_list.append(TagWithWeight(name=tag[0], weight=tag[1]))
        else:
            tag_list.append(TagWithWeight(name=tag))
    return Aku.create(key=key, content=content, tags=tag_list, priority=priority, enabled=enabled)
