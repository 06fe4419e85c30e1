# Path: knowledge/storage/loader.py
# Purpose: Load persisted collections into memory: metadata first, then entries and vectors.
# Layer: knowledge/storage.
# Details: Phase one registers metadata-only placeholders; phase two hydrates each collection in parallel.

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from tqdm import tqdm

from knowledge.errors import KnowledgeError
from knowledge.indexing.text import generate_summary
from knowledge.models.domain import VECTOR_STATUS_READY, Aku, CollectionMeta, now_ts
from .database import InMemoryCollection, InMemoryDatabase
from .layout import StorageLayout

if TYPE_CHECKING:
    from knowledge.vector_store.tag_pool import TagPoolManager

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4

VectorEntries = List[Tuple[str, List[float]]]


def load_meta_only(layout: StorageLayout) -> List[CollectionMeta]:
    """Read every collection's metadata, skipping unreadable files with a warning."""

    metas: List[CollectionMeta] = []
    for collection_id in layout.list_collection_ids():
        try:
            metas.append(layout.read_meta(collection_id))
        except KnowledgeError as exc:
            logger.warning("Skipping collection %s: %s", collection_id, exc)
    return metas


def _read_entry_or_none(path: Path) -> Optional[Aku]:
    try:
        aku = StorageLayout.read_entry_file(path)
    except KnowledgeError as exc:
        logger.warning("Skipping entry %s: %s", path.name, exc)
        return None
    if not aku.summary and aku.content:
        aku.summary = generate_summary(aku.content)
    return aku


def load_entries(layout: StorageLayout, collection_id: str, workers: int = DEFAULT_WORKERS) -> List[Aku]:
    """Read every AKU record of a collection in parallel; malformed files are skipped."""

    paths = layout.list_entry_files(collection_id)
    if not paths:
        return []
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        results = list(executor.map(_read_entry_or_none, paths))
    return [aku for aku in results if aku is not None]


def load_vectors(
    layout: StorageLayout,
    collection_id: str,
    model_id: str,
    workers: int = DEFAULT_WORKERS,
) -> Tuple[VectorEntries, int, int]:
    """Read the vectors of one model for a collection.

    Returns ``(entries, dimension, total_tokens)`` where dimension is taken from the first readable
    record; records with a different length are left for the matrix to drop.
    """

    paths = layout.list_vector_files(collection_id, model_id)
    if not paths:
        return [], 0, 0

    def read(path: Path):
        try:
            return layout.read_vector_file(path)
        except KnowledgeError as exc:
            logger.warning("Skipping vector %s: %s", path.name, exc)
            return None

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        records = [record for record in executor.map(read, paths) if record is not None]

    entries = [(record.aku_id, record.vector) for record in records if record.vector]
    dimension = len(entries[0][1]) if entries else 0
    total_tokens = sum(record.tokens or 0 for record in records)
    return entries, dimension, total_tokens


def scan_all_vectorized_models(layout: StorageLayout, collection_id: str) -> Tuple[Dict[str, List[str]], List[str]]:
    """Map each AKU id to every model holding a vector for it, plus the sorted model list."""

    mapping = layout.read_models_index(collection_id)
    per_aku: Dict[str, List[str]] = {}
    models = set()
    for model_dir in layout.list_model_dirs(collection_id):
        model_id = mapping.get(model_dir.name, model_dir.name)
        found = False
        for path in model_dir.glob("*.vec"):
            per_aku.setdefault(path.stem, []).append(model_id)
            found = True
        if found:
            models.add(model_id)
    return per_aku, sorted(models)


class WarmupPipeline:
    """Two-phase startup loader.

    Phase one registers every collection as a metadata-only placeholder so listings are available
    at once. Phase two reads entries and vectors for each collection on a worker pool, marks it
    fully loaded, and persists any repaired metadata. A failing collection is logged and left as a
    placeholder; it never aborts the others.
    """

    def __init__(
        self,
        layout: StorageLayout,
        database: InMemoryDatabase,
        tag_pools: Optional["TagPoolManager"] = None,
        workers: int = DEFAULT_WORKERS,
        show_progress: bool = False,
    ) -> None:
        self.layout = layout
        self.database = database
        self.tag_pools = tag_pools
        self.workers = max(1, workers)
        self.show_progress = show_progress
        self._thread: Optional[threading.Thread] = None
        self.finished = threading.Event()

    def register_placeholders(self) -> List[InMemoryCollection]:
        """Phase one: register metadata-only collections."""

        collections = [self.database.register(meta) for meta in load_meta_only(self.layout)]
        logger.info("Registered %d collection(s) from %s", len(collections), self.layout.bases_dir)
        return collections

    def hydrate(self, collection: InMemoryCollection) -> None:
        """
        Phase two for one collection: entries, active-model vectors, and per-AKU model coverage.

        External calls:
        - knowledge/storage/database.py::InMemoryCollection.sync_entry - index each loaded AKU.
        - knowledge/vector_store/vector_matrix.py::VectorMatrix.rebuild - load the active model matrix.
        """

        collection_id = collection.id
        entries = load_entries(self.layout, collection_id, self.workers)

        with collection.lock.read():
            model_used = collection.meta.vectorization.model_used
        vector_entries: VectorEntries = []
        dimension = 0
        total_tokens = 0
        if model_used:
            vector_entries, dimension, total_tokens = load_vectors(self.layout, collection_id, model_used, self.workers)

        per_aku, models = scan_all_vectorized_models(self.layout, collection_id)

        with collection.lock.write():
            if model_used:
                collection.vector_store.rebuild(model_used, dimension, total_tokens, vector_entries)
            for aku in entries:
                collection.sync_entry(aku)
            collection.is_fully_loaded = True

            meta = collection.meta
            orphans = [item.id for item in meta.entries if item.id not in collection.entries]
            if orphans:
                logger.warning("Collection %s: dropping %d index item(s) without a record", collection_id, len(orphans))
                meta.entries = [item for item in meta.entries if item.id in collection.entries]
            meta.models = models
            for item in meta.entries:
                for model_id in per_aku.get(item.id, []):
                    if model_id not in item.vectorized_models:
                        item.vectorized_models.append(model_id)
                if item.vectorized_models:
                    item.vector_status = VECTOR_STATUS_READY

            vectorization = meta.vectorization
            if not vectorization.model_used and models:
                vectorization.model_used = models[0]
                vectorization.is_indexed = True
                vectorization.last_indexed_at = now_ts()
                auto_entries, auto_dimension, auto_tokens = load_vectors(
                    self.layout, collection_id, models[0], self.workers
                )
                collection.vector_store.rebuild(models[0], auto_dimension, auto_tokens, auto_entries)
                vectorization.dimension = collection.vector_store.dimension
                logger.info("Collection %s: activated model %s automatically", collection_id, models[0])
            elif vectorization.model_used:
                vectorization.is_indexed = True
                if collection.vector_store.dimension:
                    vectorization.dimension = collection.vector_store.dimension
            collection.refresh_vector_status()
            snapshot = collection.meta_snapshot()

        self.layout.write_meta(snapshot)
        logger.info(
            "Collection %s hydrated: %d entries, %d vectors",
            collection_id,
            len(entries),
            len(collection.vector_store),
        )

    def _hydrate_safely(self, collection: InMemoryCollection) -> bool:
        try:
            self.hydrate(collection)
        except (KnowledgeError, OSError) as exc:
            logger.error("Failed to hydrate collection %s: %s", collection.id, exc)
            return False
        return True

    def hydrate_all(self, collections: List[InMemoryCollection]) -> int:
        """Phase two for every collection; returns how many hydrated successfully."""

        if not collections:
            return 0
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            results = executor.map(self._hydrate_safely, collections)
            if self.show_progress:
                results = tqdm(results, total=len(collections), desc="Loading collections", unit="col")
            loaded = sum(1 for ok in results if ok)
        return loaded

    def prewarm_tag_pools(self) -> int:
        if self.tag_pools is None:
            return 0
        try:
            indexed = self.tag_pools.prewarm()
        except (KnowledgeError, OSError) as exc:
            logger.error("Tag pool prewarm failed: %s", exc)
            return 0
        logger.info("Prewarmed %d tag pool(s)", indexed)
        return indexed

    def _run_background(self, collections: List[InMemoryCollection]) -> None:
        try:
            self.hydrate_all(collections)
            self.prewarm_tag_pools()
        finally:
            self.finished.set()

    def run(self, wait: bool = True) -> List[InMemoryCollection]:
        """Register placeholders, then hydrate in the foreground or on a background thread."""

        self.finished.clear()
        collections = self.register_placeholders()
        if wait:
            self._run_background(collections)
        else:
            self._thread = threading.Thread(
                target=self._run_background,
                args=(collections,),
                name="knowledge-warmup",
                daemon=True,
            )
            self._thread.start()
        return collections

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for a background warmup; returns whether it has finished."""

        return self.finished.wait(timeout)


__all__ = [
    "WarmupPipeline",
    "load_entries",
    "load_meta_only",
    "load_vectors",
    "scan_all_vectorized_models",
]
