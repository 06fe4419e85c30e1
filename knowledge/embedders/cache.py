# Path: knowledge/embedders/cache.py
# Purpose: Bounded process-wide cache of query embeddings keyed by (model, text).
# Layer: knowledge/embedders.
# Details: When full, the oldest fifth of the entries (at least one) is evicted before inserting.

from __future__ import annotations

import hashlib
import itertools
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

DEFAULT_MAX_ITEMS = 1000


def cache_key(model_id: str, text: str) -> str:
    """SHA-256 of ``model|text``; the separator keeps (ab, c) and (a, bc) apart."""

    digest = hashlib.sha256()
    digest.update(model_id.encode("utf-8"))
    digest.update(b"|")
    digest.update(text.encode("utf-8"))
    return digest.hexdigest()


class EmbeddingCache:
    """Thread-safe embedding cache with oldest-first bulk eviction."""

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        self.max_items = max_items
        self._lock = threading.Lock()
        # key -> (vector, insertion time, insertion sequence)
        self._items: Dict[str, Tuple[List[float], float, int]] = {}
        self._sequence = itertools.count()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, model_id: str, text: str) -> Optional[List[float]]:
        with self._lock:
            item = self._items.get(cache_key(model_id, text))
        return list(item[0]) if item is not None else None

    def set(self, model_id: str, text: str, vector: Sequence[float], max_items: Optional[int] = None) -> int:
        """Store a vector; returns how many entries were evicted to make room."""

        limit = self.max_items if max_items is None else max_items
        key = cache_key(model_id, text)
        evicted = 0
        with self._lock:
            if key not in self._items and len(self._items) >= limit:
                evicted = self._evict_oldest(max(1, limit // 5))
            self._items[key] = ([float(v) for v in vector], time.time(), next(self._sequence))
        return evicted

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _evict_oldest(self, count: int) -> int:
        oldest = sorted(self._items.items(), key=lambda item: (item[1][1], item[1][2]))[:count]
        for key, _ in oldest:
            del self._items[key]
        return len(oldest)


__all__ = ["EmbeddingCache", "cache_key"]
