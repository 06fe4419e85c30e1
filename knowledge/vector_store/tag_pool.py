# Path: knowledge/vector_store/tag_pool.py
# Purpose: Global per-embedding-model tag vector pool with an approximate nearest-neighbor index.
# Layer: knowledge/vector_store.
# Details: hnswlib cosine graph over a dense float32 array; pools are loaded lazily through TagPoolManager.

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import hnswlib
import numpy as np

from knowledge.storage.layout import StorageLayout, read_json, write_json
from knowledge.storage.locks import RWLock
from knowledge.errors import MalformedDataError
from .linalg import as_vector

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"
VECTORS_FILE = "vectors.bin"
MODEL_FILE = "model.json"

DEFAULT_M = 16
DEFAULT_EF_CONSTRUCTION = 200
DEFAULT_EF_SEARCH_FLOOR = 50


class ModelTagPool:
    """Tag name to vector store for one embedding model.

    Invariants: ``registry[name] == i`` iff ``id_to_name[i] == name`` and row ``i`` of the vector array
    holds that tag's vector. Any registry change drops the neighbor index; it must be rebuilt
    explicitly before neighbor search returns results again.

    Arrays are replaced rather than mutated in place, so a :meth:`snapshot` stays valid while the
    live pool keeps changing.
    """

    def __init__(
        self,
        model_id: str,
        m: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_search_floor: int = DEFAULT_EF_SEARCH_FLOOR,
        lock_timeout: Optional[float] = None,
    ) -> None:
        self.model_id = model_id
        self.registry: Dict[str, int] = {}
        self.id_to_name: List[str] = []
        self.dimension = 0
        self.index: Optional[hnswlib.Index] = None
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search_floor = ef_search_floor
        self.lock = RWLock(f"tag_pool:{model_id}", lock_timeout)
        self._rows: np.ndarray = np.empty((0, 0), dtype=np.float32)

    def __len__(self) -> int:
        return len(self.registry)

    @property
    def vectors(self) -> np.ndarray:
        """Flat float32 view of every tag vector, row after row."""

        return self._rows.reshape(-1)

    @property
    def matrix(self) -> np.ndarray:
        return self._rows

    # Persistence
    @classmethod
    def load(cls, directory: Path, model_id: str, **kwargs) -> "ModelTagPool":
        """Load a pool from ``directory``; a missing registry yields an empty pool."""

        pool = cls(model_id, **kwargs)
        registry_path = directory / REGISTRY_FILE
        if not registry_path.exists():
            return pool

        raw_registry = read_json(registry_path)
        try:
            registry = {str(name): int(idx) for name, idx in raw_registry.items()}
        except (TypeError, ValueError) as exc:
            raise MalformedDataError(registry_path, str(exc)) from exc

        flat = np.empty(0, dtype=np.float32)
        vectors_path = directory / VECTORS_FILE
        if vectors_path.exists():
            raw = vectors_path.read_bytes()
            usable = len(raw) - (len(raw) % 4)
            flat = np.frombuffer(raw[:usable], dtype="<f4").astype(np.float32)

        count = len(registry)
        if not count:
            return pool
        if flat.size == 0 or flat.size % count != 0:
            logger.error(
                "Tag pool %s vector blob length %d does not match registry size %d, starting empty",
                model_id,
                flat.size,
                count,
            )
            return pool
        if sorted(registry.values()) != list(range(count)):
            logger.error("Tag pool %s registry indices are not contiguous, starting empty", model_id)
            return pool

        dimension = flat.size // count
        pool._rows = flat.reshape(count, dimension).copy()
        pool.dimension = dimension
        id_to_name = [""] * count
        for name, idx in registry.items():
            id_to_name[idx] = name
        pool.registry = registry
        pool.id_to_name = id_to_name
        logger.info("Loaded tag pool %s from disk (%d tags)", model_id, count)
        return pool

    def save(self, directory: Path) -> None:
        """Write registry.json, vectors.bin, and model.json into ``directory``."""

        with self.lock.read():
            registry = dict(self.registry)
            blob = self._rows.astype("<f4").tobytes()
        directory.mkdir(parents=True, exist_ok=True)
        write_json(directory / REGISTRY_FILE, registry)
        (directory / VECTORS_FILE).write_bytes(blob)
        write_json(directory / MODEL_FILE, {"modelId": self.model_id})

    # Mutation
    def sync_vectors(self, pairs: Iterable[Tuple[str, Sequence[float]]]) -> int:
        """Upsert tag vectors by name and invalidate the neighbor index; returns the number applied."""

        with self.lock.write():
            rows = self._rows.copy()
            appended: List[np.ndarray] = []
            applied = 0
            for name, values in pairs:
                vector = as_vector(values)
                if vector.size == 0:
                    continue
                if self.dimension == 0:
                    self.dimension = int(vector.size)
                    rows = np.empty((0, self.dimension), dtype=np.float32)
                if vector.size != self.dimension:
                    logger.warning(
                        "Tag pool %s: skipping %r, dimension %d != %d",
                        self.model_id,
                        name,
                        vector.size,
                        self.dimension,
                    )
                    continue
                idx = self.registry.get(name)
                if idx is not None:
                    if idx < rows.shape[0]:
                        rows[idx] = vector
                    else:
                        appended[idx - rows.shape[0]] = vector
                else:
                    self.registry[name] = len(self.id_to_name)
                    self.id_to_name.append(name)
                    appended.append(vector)
                applied += 1
            if appended:
                rows = np.vstack([rows, np.vstack(appended)]).astype(np.float32)
            self._rows = rows
            self.index = None
        return applied

    def rebuild_index(self) -> bool:
        """Build the hnswlib graph over every registered vector; a no-op for an empty pool."""

        with self.lock.write():
            return self._rebuild_index_locked()

    def _rebuild_index_locked(self) -> bool:
        count = len(self.registry)
        if count == 0 or self.dimension == 0:
            self.index = None
            return False

        started = time.perf_counter()
        index = hnswlib.Index(space="cosine", dim=self.dimension)
        index.init_index(max_elements=count, ef_construction=self.ef_construction, M=self.m)
        rows = self._rows[:count]
        index.add_items(rows, np.arange(rows.shape[0]))
        self.index = index
        logger.info(
            "Built tag pool index for %s (%d tags) in %.3fs",
            self.model_id,
            count,
            time.perf_counter() - started,
        )
        return True

    def ensure_index(self) -> bool:
        """Rebuild the neighbor index when it has been invalidated."""

        with self.lock.read():
            if self.index is not None or not self.registry:
                return self.index is not None
        with self.lock.write():
            if self.index is None:
                return self._rebuild_index_locked()
            return True

    # Queries
    def search_neighbors(self, query: Sequence[float], k: int) -> List[Tuple[int, float]]:
        """Return up to ``k`` (tag index, cosine similarity) pairs, best first.

        Returns an empty list when no index has been built.
        """

        index = self.index
        count = len(self.id_to_name)
        vector = as_vector(query)
        if index is None or k <= 0 or count == 0 or vector.size != self.dimension:
            return []
        k = min(k, index.get_current_count())
        index.set_ef(max(k, self.ef_search_floor))
        labels, distances = index.knn_query(vector.reshape(1, -1), k=k)
        return [(int(label), float(1.0 - distance)) for label, distance in zip(labels[0], distances[0])]

    def get_missing_tags(self, names: Iterable[str]) -> List[str]:
        """Tag names not yet registered, in input order."""

        with self.lock.read():
            return [name for name in names if name not in self.registry]

    def get_vector(self, idx: int) -> Optional[np.ndarray]:
        if self.dimension == 0 or idx < 0 or idx >= self._rows.shape[0]:
            return None
        return self._rows[idx]

    def get_tag_name(self, idx: int) -> Optional[str]:
        if 0 <= idx < len(self.id_to_name):
            return self.id_to_name[idx]
        return None

    def vector_for(self, name: str) -> Optional[np.ndarray]:
        idx = self.registry.get(name)
        return None if idx is None else self.get_vector(idx)

    def snapshot(self) -> "ModelTagPool":
        """Cheap read-only copy sharing the current arrays and index."""

        with self.lock.read():
            copy = ModelTagPool(self.model_id, self.m, self.ef_construction, self.ef_search_floor)
            copy.registry = dict(self.registry)
            copy.id_to_name = list(self.id_to_name)
            copy.dimension = self.dimension
            copy.index = self.index
            copy._rows = self._rows
        return copy

    def stats(self) -> Dict:
        return {
            "modelId": self.model_id,
            "tagCount": len(self.registry),
            "dimension": self.dimension,
            "hasIndex": self.index is not None,
        }


class TagPoolManager:
    """Process-wide cache of tag pools keyed by model id.

    Pools are loaded from disk on first access using the read, miss, write, re-check pattern so that
    concurrent callers never load the same pool twice.
    """

    def __init__(
        self,
        layout: StorageLayout,
        m: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_search_floor: int = DEFAULT_EF_SEARCH_FLOOR,
        lock_timeout: Optional[float] = None,
    ) -> None:
        self.layout = layout
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search_floor = ef_search_floor
        self.lock_timeout = lock_timeout
        self._pools: Dict[str, ModelTagPool] = {}
        self._lock = RWLock("tag_pools", lock_timeout)

    def get_pool(self, model_id: str) -> ModelTagPool:
        """Return the pool for a model, loading it from disk on first access."""

        with self._lock.read():
            pool = self._pools.get(model_id)
            if pool is not None:
                return pool

        with self._lock.write():
            pool = self._pools.get(model_id)
            if pool is not None:
                return pool
            pool = ModelTagPool.load(
                self.layout.tag_pool_dir(model_id),
                model_id,
                m=self.m,
                ef_construction=self.ef_construction,
                ef_search_floor=self.ef_search_floor,
                lock_timeout=self.lock_timeout,
            )
            self._pools[model_id] = pool
            return pool

    def get_indexed_snapshot(self, model_id: str) -> ModelTagPool:
        """Pool snapshot whose neighbor index is built whenever the pool has tags."""

        pool = self.get_pool(model_id)
        pool.ensure_index()
        return pool.snapshot()

    def save_pool(self, model_id: str) -> None:
        self.get_pool(model_id).save(self.layout.tag_pool_dir(model_id))

    def loaded_models(self) -> List[str]:
        with self._lock.read():
            return sorted(self._pools)

    def list_models_on_disk(self) -> List[str]:
        """Original model ids of every pool directory that records one."""

        root = self.layout.tag_pool_root
        if not root.exists():
            return []
        models: List[str] = []
        for directory in sorted(root.iterdir()):
            marker = directory / MODEL_FILE
            if not directory.is_dir() or not marker.exists():
                continue
            try:
                models.append(str(read_json(marker)["modelId"]))
            except (MalformedDataError, KeyError) as exc:
                logger.warning("Skipping tag pool directory %s: %s", directory, exc)
        return models

    def list_models(self) -> List[str]:
        return sorted(set(self.list_models_on_disk()) | set(self.loaded_models()))

    def clear_pool(self, model_id: str) -> bool:
        """Drop a pool from memory and delete its files."""

        with self._lock.write():
            removed = self._pools.pop(model_id, None) is not None
        directory = self.layout.tag_pool_dir(model_id)
        if directory.exists():
            shutil.rmtree(directory)
            removed = True
        return removed

    def clear_other_pools(self, keep_model_id: str) -> int:
        """Delete every pool except the kept model; returns the number of pools removed."""

        keep_dir = self.layout.tag_pool_dir(keep_model_id).name
        removed = 0
        with self._lock.write():
            for model_id in [model for model in self._pools if model != keep_model_id]:
                del self._pools[model_id]
        root = self.layout.tag_pool_root
        if root.exists():
            for directory in root.iterdir():
                if directory.is_dir() and directory.name != keep_dir:
                    shutil.rmtree(directory)
                    removed += 1
        return removed

    def flush_all(self) -> int:
        """Rebuild missing indexes and persist every resident pool; returns pools saved."""

        with self._lock.read():
            pools = list(self._pools.values())
        for pool in pools:
            pool.ensure_index()
            pool.save(self.layout.tag_pool_dir(pool.model_id))
        return len(pools)

    def prewarm(self) -> int:
        """Load every pool found on disk and build its neighbor index; returns pools indexed."""

        indexed = 0
        for model_id in self.list_models_on_disk():
            if self.get_pool(model_id).ensure_index():
                indexed += 1
        return indexed


__all__ = ["ModelTagPool", "TagPoolManager"]
