# Path: knowledge/storage/manager.py
# Purpose: Provide the high-level knowledge manager used by the API and scripts.
# Layer: knowledge/storage.
# Details: Coordinates the on-disk layout, in-memory collections, tag pools, embedding cache, and search.

from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from tqdm import tqdm

from config.settings import AppSettings
from knowledge.embedders.cache import EmbeddingCache
from knowledge.errors import KnowledgeError, NotFoundError, StorageError
from knowledge.indexing.text import content_hash, extract_tags, extract_title, generate_summary
from knowledge.models.domain import (
    VECTOR_STATUS_NONE,
    VECTOR_STATUS_READY,
    Aku,
    AkuPatch,
    BatchImportResult,
    CollectionMeta,
    EngineInfo,
    ImportConfig,
    LibraryStats,
    LoadStats,
    ScoredResult,
    SearchFilters,
    TagWithWeight,
    VectorCoverage,
    new_id,
    now_ts,
)
from knowledge.search.base import RetrievalContext
from knowledge.search.pipeline import SearchPipeline, build_default_engines
from knowledge.vector_store.tag_pool import VECTORS_FILE, TagPoolManager
from .database import InMemoryCollection, InMemoryDatabase
from .layout import StorageLayout
from .loader import WarmupPipeline, load_vectors

logger = logging.getLogger(__name__)

EDITABLE_META_FIELDS = ("name", "description", "tags", "config", "author", "icon")

VectorItem = Tuple[str, Sequence[float], Optional[int]]


class KnowledgeManager:
    """Facade over every knowledge operation.

    Collection methods take the collection lock themselves; callers never lock. Metadata is
    persisted while the collection write lock is held so concurrent writers cannot reorder saves.
    """

    def __init__(self, settings: Optional[AppSettings] = None) -> None:
        self.settings = settings or AppSettings()
        lock_timeout = self.settings.lock_timeout
        self.layout = StorageLayout(self.settings.storage_root)
        self.database = InMemoryDatabase(lock_timeout)
        pool_settings = self.settings.tag_pool
        self.tag_pools = TagPoolManager(
            self.layout,
            m=pool_settings.m,
            ef_construction=pool_settings.ef_construction,
            ef_search_floor=pool_settings.ef_search_floor,
            lock_timeout=lock_timeout,
        )
        self.embedding_cache = EmbeddingCache(self.settings.embedding_cache_max_items)
        self.workers = max(1, self.settings.warmup_workers)
        self.context = RetrievalContext(self.database, self.tag_pools, self.layout, self.workers)
        self.pipeline = SearchPipeline(
            self.context,
            build_default_engines(self.settings.engines),
            self.settings.default_engine,
        )
        self.warmup_pipeline = WarmupPipeline(
            self.layout,
            self.database,
            self.tag_pools,
            workers=self.workers,
            show_progress=self.settings.show_progress,
        )

    # Lifecycle
    def initialize(self) -> None:
        self.layout.ensure()

    def warmup(self, wait: bool = True) -> int:
        """Load every collection; returns how many were registered."""

        self.initialize()
        return len(self.warmup_pipeline.run(wait=wait))

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self.warmup_pipeline.join(timeout)

    # Collections
    def _collection(self, collection_id: str) -> InMemoryCollection:
        return self.database.get(collection_id)

    def _save_meta_locked(self, collection: InMemoryCollection) -> None:
        """Persist metadata; the caller holds the collection write lock."""

        try:
            self.layout.write_meta(collection.meta)
        except StorageError as exc:
            logger.error("Failed to save metadata for %s: %s", collection.id, exc)
            raise

    def list_collections(self) -> List[CollectionMeta]:
        metas = []
        for collection in self.database.collections():
            with collection.lock.read():
                metas.append(collection.meta_snapshot())
        metas.sort(key=lambda meta: meta.updated_at, reverse=True)
        return metas

    def create_collection(
        self,
        name: str,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        config: Optional[Dict] = None,
        author: Optional[str] = None,
        icon: Optional[str] = None,
    ) -> CollectionMeta:
        ts = now_ts()
        meta = CollectionMeta(
            id=new_id(),
            name=name,
            description=description,
            created_at=ts,
            updated_at=ts,
            author=author,
            tags=list(tags or []),
            icon=icon,
            config=dict(config or {}),
        )
        self.layout.write_meta(meta)
        collection = self.database.register(meta)
        with collection.lock.write():
            collection.is_fully_loaded = True
            snapshot = collection.meta_snapshot()
        logger.info("Created collection %s (%s)", meta.id, name)
        return snapshot

    def get_collection_meta(self, collection_id: str, model_id: Optional[str] = None) -> CollectionMeta:
        """Metadata snapshot; with a model id each item's status reflects that model's vector files."""

        collection = self._collection(collection_id)
        with collection.lock.read():
            snapshot = collection.meta_snapshot()
        if model_id:
            for item in snapshot.entries:
                if self.layout.has_vector(collection_id, model_id, item.id):
                    item.vector_status = VECTOR_STATUS_READY
                    if model_id not in item.vectorized_models:
                        item.vectorized_models.append(model_id)
                else:
                    item.vector_status = VECTOR_STATUS_NONE
                    if model_id in item.vectorized_models:
                        item.vectorized_models.remove(model_id)
        return snapshot

    def update_collection_meta(self, collection_id: str, **changes) -> CollectionMeta:
        unknown = sorted(set(changes) - set(EDITABLE_META_FIELDS))
        if unknown:
            raise KnowledgeError(f"Unknown collection field(s): {', '.join(unknown)}")
        collection = self._collection(collection_id)
        with collection.lock.write():
            for field_name, value in changes.items():
                setattr(collection.meta, field_name, value)
            collection.meta.updated_at = now_ts()
            self._save_meta_locked(collection)
            return collection.meta_snapshot()

    def delete_collection(self, collection_id: str) -> None:
        removed = self.database.remove(collection_id)
        on_disk = self.layout.meta_path(collection_id).exists()
        if removed is None and not on_disk:
            raise NotFoundError(f"Collection {collection_id} not found")
        self.layout.delete_collection(collection_id)
        logger.info("Deleted collection %s", collection_id)

    # AKUs
    def get_aku(self, collection_id: str, aku_id: str) -> Aku:
        collection = self._collection(collection_id)
        with collection.lock.read():
            aku = collection.entries.get(aku_id)
            if aku is not None:
                return copy.deepcopy(aku)
        return self.layout.read_entry(collection_id, aku_id)

    def get_akus(self, aku_ids: Iterable[str]) -> List[Aku]:
        """Resident AKUs for the given ids across every collection, in request order."""

        wanted = list(dict.fromkeys(aku_ids))
        found: Dict[str, Aku] = {}
        for collection in self.database.collections():
            with collection.lock.read():
                for aku_id in wanted:
                    aku = collection.entries.get(aku_id)
                    if aku is not None and aku_id not in found:
                        found[aku_id] = copy.deepcopy(aku)
        return [found[aku_id] for aku_id in wanted if aku_id in found]

    def list_aku_ids(self, collection_id: str) -> List[str]:
        collection = self._collection(collection_id)
        with collection.lock.read():
            return [item.id for item in collection.meta.entries]

    @staticmethod
    def _prepare_aku(aku: Aku, import_config: Optional[ImportConfig] = None) -> Aku:
        """Copy the AKU and fill derived fields: extracted metadata, hash, summary, timestamps."""

        prepared = copy.deepcopy(aku)
        if import_config is not None:
            if import_config.auto_extract_title:
                title = extract_title(prepared.content)
                if title:
                    prepared.key = title
            if import_config.auto_extract_tags and not prepared.tags:
                prepared.tags = [
                    TagWithWeight(name=name, weight=1.0, hash=content_hash(name))
                    for name in extract_tags(prepared.content)
                ]
            present = {tag.name for tag in prepared.tags}
            for name in import_config.default_tags:
                if name not in present:
                    prepared.tags.append(TagWithWeight(name=name, weight=1.0, hash=content_hash(name)))
                    present.add(name)

        prepared.content_hash = content_hash(prepared.content)
        if not prepared.summary:
            prepared.summary = generate_summary(prepared.content)
        ts = now_ts()
        if not prepared.created_at:
            prepared.created_at = ts
        prepared.updated_at = ts
        return prepared

    @staticmethod
    def _stored_hash(collection: InMemoryCollection, aku_id: str) -> Optional[str]:
        stored = collection.entries.get(aku_id)
        if stored is not None and stored.content_hash is not None:
            return stored.content_hash
        item = collection.meta.find_entry(aku_id)
        return item.content_hash if item is not None else None

    def upsert_aku(self, collection_id: str, aku: Aku, import_config: Optional[ImportConfig] = None) -> Aku:
        """
        Create or replace one AKU.

        When the stored content hash differs from the new one, the AKU's vector files are deleted
        for every model and its vector status resets.

        External calls:
        - knowledge/storage/database.py::InMemoryCollection.sync_entry - reconcile all in-memory indexes.
        """

        collection = self._collection(collection_id)
        prepared = self._prepare_aku(aku, import_config)
        with collection.lock.read():
            old_hash = self._stored_hash(collection, prepared.id)
        changed = old_hash is not None and old_hash != prepared.content_hash
        if changed:
            removed = self.layout.delete_vectors_for_aku(collection_id, prepared.id)
            logger.info("Content of %s changed; removed %d stale vector file(s)", prepared.id, removed)
        self.layout.write_entry(collection_id, prepared)

        with collection.lock.write():
            if changed:
                collection.vector_store.remove_vector(prepared.id)
            collection.sync_entry(prepared)
            collection.meta.updated_at = now_ts()
            self._save_meta_locked(collection)
        return copy.deepcopy(prepared)

    def batch_upsert(
        self,
        collection_id: str,
        akus: Sequence[Aku],
        deduplicate: bool = False,
        import_config: Optional[ImportConfig] = None,
    ) -> BatchImportResult:
        """Upsert many AKUs with parallel hashing and writes and one serialized in-memory update."""

        collection = self._collection(collection_id)
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            prepared = list(executor.map(lambda item: self._prepare_aku(item, import_config), akus))

        with collection.lock.read():
            seen = {item.content_hash for item in collection.meta.entries if item.content_hash}
            old_hashes = {item.id: self._stored_hash(collection, item.id) for item in prepared}

        accepted: List[Aku] = []
        duplicates = 0
        for item in prepared:
            if deduplicate and item.content_hash and item.content_hash in seen:
                duplicates += 1
                continue
            if item.content_hash:
                seen.add(item.content_hash)
            accepted.append(item)

        changed = {
            item.id
            for item in accepted
            if old_hashes.get(item.id) is not None and old_hashes[item.id] != item.content_hash
        }

        def persist(item: Aku) -> None:
            if item.id in changed:
                self.layout.delete_vectors_for_aku(collection_id, item.id)
            self.layout.write_entry(collection_id, item)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            list(executor.map(persist, accepted))

        with collection.lock.write():
            for item in accepted:
                if item.id in changed:
                    collection.vector_store.remove_vector(item.id)
                collection.sync_entry(item)
            collection.meta.updated_at = now_ts()
            self._save_meta_locked(collection)

        logger.info(
            "Batch upsert into %s: %d written, %d duplicate(s)",
            collection_id,
            len(accepted),
            duplicates,
        )
        return BatchImportResult(
            entries=[copy.deepcopy(item) for item in accepted],
            skipped_count=0,
            duplicate_count=duplicates,
        )

    def import_files(
        self,
        collection_id: str,
        paths: Sequence[Path],
        deduplicate: bool = False,
        import_config: Optional[ImportConfig] = None,
    ) -> BatchImportResult:
        """Import text files as AKUs; unreadable or non-text files are counted as skipped."""

        self._collection(collection_id)

        def read(path: Path) -> Optional[Aku]:
            path = Path(path)
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Skipping %s: %s", path, exc)
                return None
            return Aku.create(key=path.name.split(".", 1)[0], content=content)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            loaded = executor.map(read, paths)
            if self.settings.show_progress:
                loaded = tqdm(loaded, total=len(paths), desc="Reading files", unit="file")
            candidates = list(loaded)

        akus = [aku for aku in candidates if aku is not None]
        result = self.batch_upsert(collection_id, akus, deduplicate=deduplicate, import_config=import_config)
        result.skipped_count += len(candidates) - len(akus)
        return result

    def batch_patch(self, collection_id: str, aku_ids: Sequence[str], patch: AkuPatch) -> int:
        """Apply a partial update to many AKUs; returns how many were patched."""

        collection = self._collection(collection_id)
        targets: List[Aku] = []
        missing: List[str] = []
        with collection.lock.read():
            for aku_id in dict.fromkeys(aku_ids):
                aku = collection.entries.get(aku_id)
                if aku is None:
                    missing.append(aku_id)
                else:
                    targets.append(copy.deepcopy(aku))
        for aku_id in missing:
            try:
                targets.append(self.layout.read_entry(collection_id, aku_id))
            except KnowledgeError as exc:
                logger.warning("Cannot patch %s: %s", aku_id, exc)

        for aku in targets:
            patch.apply(aku)
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            list(executor.map(lambda aku: self.layout.write_entry(collection_id, aku), targets))

        with collection.lock.write():
            for aku in targets:
                collection.sync_entry(aku)
            collection.meta.updated_at = now_ts()
            self._save_meta_locked(collection)
        return len(targets)

    def delete_aku(self, collection_id: str, aku_id: str) -> bool:
        """Delete one AKU; an id unknown in memory and on disk raises ``NotFoundError``."""

        if not self.batch_delete(collection_id, [aku_id]):
            raise NotFoundError(f"AKU {aku_id} not found in collection {collection_id}")
        return True

    def batch_delete(self, collection_id: str, aku_ids: Sequence[str]) -> int:
        """Delete AKU records, their vectors, and every in-memory reference; returns ids removed."""

        collection = self._collection(collection_id)
        ids = list(dict.fromkeys(aku_ids))

        def purge(aku_id: str) -> bool:
            self.layout.delete_vectors_for_aku(collection_id, aku_id)
            return self.layout.delete_entry(collection_id, aku_id)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            on_disk = dict(zip(ids, executor.map(purge, ids)))

        removed = 0
        with collection.lock.write():
            for aku_id in ids:
                if collection.remove_entry(aku_id) or on_disk[aku_id]:
                    removed += 1
            collection.meta.updated_at = now_ts()
            self._save_meta_locked(collection)
        logger.info("Deleted %d AKU(s) from %s", removed, collection_id)
        return removed

    # Vectors
    def _apply_vector_locked(
        self,
        collection: InMemoryCollection,
        aku_id: str,
        vector: Sequence[float],
        model_id: str,
        tokens: Optional[int],
    ) -> None:
        store = collection.vector_store
        if not store.model_id:
            store.model_id = model_id
        if store.model_id == model_id:
            store.update_vector(aku_id, vector)

        meta = collection.meta
        if model_id not in meta.models:
            meta.models.append(model_id)
        item = meta.find_entry(aku_id)
        if item is not None:
            item.vector_status = VECTOR_STATUS_READY
            if model_id not in item.vectorized_models:
                item.vectorized_models.append(model_id)
            item.total_tokens = tokens or 0
        meta.vectorization.total_tokens += tokens or 0
        if not meta.vectorization.model_used:
            meta.vectorization.model_used = model_id
        if store.model_id == model_id and store.dimension:
            meta.vectorization.dimension = store.dimension

    def update_aku_vector(
        self,
        collection_id: str,
        aku_id: str,
        vector: Sequence[float],
        model_id: str,
        tokens: Optional[int] = None,
    ) -> None:
        collection = self._collection(collection_id)
        self.layout.write_vector(collection_id, model_id, aku_id, vector, tokens)
        self.layout.register_model(collection_id, model_id)
        with collection.lock.write():
            self._apply_vector_locked(collection, aku_id, vector, model_id, tokens)
            collection.meta.vectorization.last_indexed_at = now_ts()
            self._save_meta_locked(collection)

    def bulk_update_vectors(self, collection_id: str, model_id: str, items: Sequence[VectorItem]) -> int:
        """Persist many ``(aku_id, vector, tokens)`` triples; returns how many were written."""

        collection = self._collection(collection_id)
        self.layout.register_model(collection_id, model_id)
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            list(
                executor.map(
                    lambda item: self.layout.write_vector(collection_id, model_id, item[0], item[1], item[2]),
                    items,
                )
            )
        with collection.lock.write():
            for aku_id, vector, tokens in items:
                self._apply_vector_locked(collection, aku_id, vector, model_id, tokens)
            collection.meta.vectorization.last_indexed_at = now_ts()
            self._save_meta_locked(collection)
        return len(items)

    def load_model_vectors(self, collection_id: str, model_id: str) -> LoadStats:
        """Make ``model_id`` the active matrix of a collection, loading it from disk when needed."""

        collection = self._collection(collection_id)
        with collection.lock.read():
            store = collection.vector_store
            if store.model_id == model_id and len(store):
                return LoadStats(loaded_count=len(store), dimension=store.dimension, model_id=model_id)

        entries, dimension, total_tokens = load_vectors(self.layout, collection_id, model_id, self.workers)
        with collection.lock.write():
            store = collection.vector_store
            loaded = store.rebuild(model_id, dimension, total_tokens, entries)
            changed = collection.refresh_vector_status()
            vectorization = collection.meta.vectorization
            if vectorization.model_used != model_id or vectorization.dimension != store.dimension:
                vectorization.model_used = model_id
                vectorization.dimension = store.dimension
                vectorization.is_indexed = loaded > 0
                changed = True
            if changed:
                self._save_meta_locked(collection)
        logger.info("Loaded %d %s vector(s) into %s", loaded, model_id, collection_id)
        return LoadStats(loaded_count=loaded, dimension=dimension, model_id=model_id)

    def check_vector_coverage(self, collection_ids: Optional[Sequence[str]], model_id: str) -> VectorCoverage:
        coverage = VectorCoverage()
        for collection in self.database.collections(collection_ids):
            with collection.lock.read():
                ids = [item.id for item in collection.meta.entries]
            for aku_id in ids:
                coverage.total += 1
                if self.layout.has_vector(collection.id, model_id, aku_id):
                    coverage.cached += 1
                else:
                    coverage.missing += 1
                    coverage.missing_map.setdefault(collection.id, []).append(aku_id)
        return coverage

    def clear_legacy_vectors(self, collection_id: str, current_model: str) -> int:
        """Delete every model's vectors except ``current_model``; returns files deleted."""

        deleted = self.layout.delete_model_dirs_except(collection_id, current_model)
        collection = self.database.find(collection_id)
        if collection is not None:
            with collection.lock.write():
                if collection.vector_store.model_id not in ("", current_model):
                    collection.vector_store.clear()
                meta = collection.meta
                meta.models = [model for model in meta.models if model == current_model]
                for item in meta.entries:
                    item.vectorized_models = [model for model in item.vectorized_models if model == current_model]
                    item.vector_status = VECTOR_STATUS_READY if item.vectorized_models else VECTOR_STATUS_NONE
                self._save_meta_locked(collection)
        logger.info("Removed %d legacy vector file(s) from %s", deleted, collection_id)
        return deleted

    def clear_all_other_vectors(self, keep_model: str) -> int:
        collection_ids = sorted(set(self.layout.list_collection_ids()) | set(self.database.ids()))
        return sum(self.clear_legacy_vectors(collection_id, keep_model) for collection_id in collection_ids)

    # Tag pools
    def get_missing_tags(self, model_id: str, tag_names: Iterable[str]) -> List[str]:
        return self.tag_pools.get_pool(model_id).get_missing_tags(tag_names)

    def sync_tag_vectors(self, model_id: str, pairs: Iterable[Tuple[str, Sequence[float]]]) -> int:
        applied = self.tag_pools.get_pool(model_id).sync_vectors(pairs)
        self.tag_pools.save_pool(model_id)
        logger.info("Synced %d tag vector(s) for %s", applied, model_id)
        return applied

    def rebuild_tag_pool_index(self, model_id: str) -> bool:
        return self.tag_pools.get_pool(model_id).rebuild_index()

    def list_all_tags(self) -> List[str]:
        tags = set()
        for collection in self.database.collections():
            with collection.lock.read():
                tags.update(collection.meta.tags)
                for item in collection.meta.entries:
                    tags.update(item.tags)
        return sorted(tags)

    def tag_pool_stats(self, model_id: str) -> Dict:
        stats = self.tag_pools.get_pool(model_id).stats()
        blob = self.layout.tag_pool_dir(model_id) / VECTORS_FILE
        stats["poolSizeBytes"] = blob.stat().st_size if blob.exists() else 0
        return stats

    def list_tag_pool_models(self) -> List[str]:
        return self.tag_pools.list_models()

    def clear_tag_pool(self, model_id: str) -> bool:
        return self.tag_pools.clear_pool(model_id)

    def clear_other_tag_pools(self, keep_model_id: str) -> int:
        return self.tag_pools.clear_other_pools(keep_model_id)

    def flush_all_tag_pools(self) -> int:
        return self.tag_pools.flush_all()

    # Statistics
    def library_stats(self, model_id: Optional[str] = None) -> LibraryStats:
        stats = LibraryStats()
        for collection in self.database.collections():
            with collection.lock.read():
                meta = collection.meta
                total = len(meta.entries)
                if model_id:
                    vectorized = len(collection.vector_store) if collection.vector_store.model_id == model_id else 0
                else:
                    vectorized = sum(1 for item in meta.entries if item.vector_status == VECTOR_STATUS_READY)
                for item in meta.entries:
                    for tag in item.tags:
                        stats.tag_usage[tag] = stats.tag_usage.get(tag, 0) + 1
            stats.total_collections += 1
            stats.total_entries += total
            stats.vectorized_entries += vectorized
            stats.collection_stats[collection.id] = {"total": total, "vectorized": vectorized}
        stats.discovered_tags = sorted(stats.tag_usage)
        return stats

    # Embedding cache
    def get_cached_embedding(self, model_id: str, text: str) -> Optional[List[float]]:
        return self.embedding_cache.get(model_id, text)

    def set_cached_embedding(
        self,
        model_id: str,
        text: str,
        vector: Sequence[float],
        max_items: Optional[int] = None,
    ) -> int:
        return self.embedding_cache.set(model_id, text, vector, max_items)

    def clear_embedding_cache(self) -> None:
        self.embedding_cache.clear()

    # Search
    def list_engines(self) -> List[EngineInfo]:
        return self.pipeline.list_engines()

    def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        engine_id: Optional[str] = None,
        vector: Optional[Sequence[float]] = None,
        model: Optional[str] = None,
    ) -> List[ScoredResult]:
        return self.pipeline.search(query, filters, engine_id, vector, model)


__all__ = ["KnowledgeManager"]
