# Path: knowledge/storage/database.py
# Purpose: Mutable runtime state: loaded collections with their AKUs, inverted index, and vector matrix.
# Layer: knowledge/storage.
# Details: The registry and every collection carry independent reader/writer locks.

from __future__ import annotations

import copy
import logging
from typing import Dict, Iterable, List, Optional

from knowledge.errors import NotFoundError
from knowledge.indexing.inverted_index import TextInvertedIndex
from knowledge.models.domain import (
    VECTOR_STATUS_NONE,
    VECTOR_STATUS_READY,
    Aku,
    AkuIndexItem,
    CollectionMeta,
)
from knowledge.vector_store.vector_matrix import VectorMatrix
from .locks import RWLock

logger = logging.getLogger(__name__)

DEFAULT_AVG_DOC_LENGTH = 500.0


class InMemoryCollection:
    """One collection held in memory.

    Callers hold :attr:`lock` (read for queries, write for mutation) around every method below;
    the methods themselves do not lock.
    """

    def __init__(self, meta: CollectionMeta, lock_timeout: Optional[float] = None) -> None:
        self.meta = meta
        self.is_fully_loaded = False
        self.entries: Dict[str, Aku] = {}
        self.key_to_id: Dict[str, str] = {}
        self.text_index = TextInvertedIndex()
        self.vector_store = VectorMatrix()
        self.lock = RWLock(f"collection:{meta.id}", lock_timeout)

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def name(self) -> str:
        return self.meta.name

    def sync_entry(self, aku: Aku) -> None:
        """Feed one AKU into the key index, inverted index, and metadata index."""

        previous = self.entries.get(aku.id)
        if previous is not None and previous.key and previous.key != aku.key:
            if self.key_to_id.get(previous.key) == aku.id:
                del self.key_to_id[previous.key]
        if aku.key:
            self.key_to_id[aku.key] = aku.id

        self.text_index.index_aku(aku)

        is_vectorized = aku.id in self.vector_store
        current_model = self.vector_store.model_id
        existing = self.meta.find_entry(aku.id)
        if existing is not None:
            existing.key = aku.key
            existing.summary = aku.summary
            existing.tags = aku.tag_names()
            existing.priority = aku.priority
            existing.updated_at = aku.updated_at

            # A missing hash on either side keeps the stored status.
            content_changed = (
                existing.content_hash is not None
                and aku.content_hash is not None
                and existing.content_hash != aku.content_hash
            )
            if content_changed:
                logger.info(
                    "Content of %s changed (%s -> %s); resetting vector status",
                    aku.id,
                    existing.content_hash,
                    aku.content_hash,
                )
                existing.content_hash = aku.content_hash
                existing.vector_status = VECTOR_STATUS_NONE
                existing.vectorized_models.clear()
            elif is_vectorized:
                existing.vector_status = VECTOR_STATUS_READY
                if current_model and current_model not in existing.vectorized_models:
                    existing.vectorized_models.append(current_model)
            if existing.content_hash is None:
                existing.content_hash = aku.content_hash
        else:
            status = VECTOR_STATUS_READY if is_vectorized else VECTOR_STATUS_NONE
            models = [current_model] if is_vectorized and current_model else []
            self.meta.entries.append(aku.to_index_item(status, models))

        self.entries[aku.id] = aku

    def refresh_vector_status(self) -> bool:
        """Reconcile index entries with the loaded vector matrix; returns whether anything changed."""

        current_model = self.vector_store.model_id
        if not current_model:
            return False

        changed = False
        for entry in self.meta.entries:
            if entry.id not in self.vector_store:
                continue
            if entry.vector_status != VECTOR_STATUS_READY:
                entry.vector_status = VECTOR_STATUS_READY
                changed = True
            if current_model not in entry.vectorized_models:
                entry.vectorized_models.append(current_model)
                changed = True
        return changed

    def remove_entry(self, aku_id: str) -> bool:
        """Drop an AKU from the entry map, key index, inverted index, vector matrix, and metadata."""

        aku = self.entries.pop(aku_id, None)
        if aku is not None and aku.key and self.key_to_id.get(aku.key) == aku_id:
            del self.key_to_id[aku.key]
        else:
            for key in [key for key, value in self.key_to_id.items() if value == aku_id]:
                del self.key_to_id[key]
        self.text_index.remove_aku(aku_id)
        self.vector_store.remove_vector(aku_id)

        before = len(self.meta.entries)
        self.meta.entries = [entry for entry in self.meta.entries if entry.id != aku_id]
        in_meta = len(self.meta.entries) != before

        if self.is_fully_loaded and (aku is not None) != in_meta:
            logger.warning(
                "Partial removal of %s from %s: entry map=%s, metadata index=%s",
                aku_id,
                self.id,
                aku is not None,
                in_meta,
            )
        return aku is not None or in_meta

    def contains_anywhere(self, aku_id: str) -> bool:
        """Whether any of the four indexes still references the id."""

        return (
            aku_id in self.entries
            or aku_id in self.key_to_id.values()
            or self.text_index.contains_id(aku_id)
            or aku_id in self.vector_store
            or self.meta.find_entry(aku_id) is not None
        )

    def index_item(self, aku_id: str) -> Optional[AkuIndexItem]:
        return self.meta.find_entry(aku_id)

    def average_content_length(self) -> float:
        """Mean AKU content length in characters; a fixed default for empty collections."""

        if not self.entries:
            return DEFAULT_AVG_DOC_LENGTH
        return sum(len(aku.content) for aku in self.entries.values()) / len(self.entries)

    def meta_snapshot(self) -> CollectionMeta:
        return copy.deepcopy(self.meta)


class InMemoryDatabase:
    """Registry of loaded collections keyed by id."""

    def __init__(self, lock_timeout: Optional[float] = None) -> None:
        self.lock_timeout = lock_timeout
        self.lock = RWLock("collections", lock_timeout)
        self._collections: Dict[str, InMemoryCollection] = {}

    def __len__(self) -> int:
        with self.lock.read():
            return len(self._collections)

    def __contains__(self, collection_id: object) -> bool:
        with self.lock.read():
            return collection_id in self._collections

    def register(self, meta: CollectionMeta) -> InMemoryCollection:
        """Register a placeholder collection for the metadata, keeping an existing one if present."""

        with self.lock.write():
            collection = self._collections.get(meta.id)
            if collection is None:
                collection = InMemoryCollection(meta, self.lock_timeout)
                self._collections[meta.id] = collection
            return collection

    def find(self, collection_id: str) -> Optional[InMemoryCollection]:
        with self.lock.read():
            return self._collections.get(collection_id)

    def get(self, collection_id: str) -> InMemoryCollection:
        collection = self.find(collection_id)
        if collection is None:
            raise NotFoundError(f"Collection {collection_id} not found")
        return collection

    def remove(self, collection_id: str) -> Optional[InMemoryCollection]:
        with self.lock.write():
            return self._collections.pop(collection_id, None)

    def ids(self) -> List[str]:
        with self.lock.read():
            return list(self._collections)

    def collections(self, collection_ids: Optional[Iterable[str]] = None) -> List[InMemoryCollection]:
        """Snapshot of registered collections, optionally restricted to the given ids."""

        with self.lock.read():
            if collection_ids is None:
                return list(self._collections.values())
            wanted = list(dict.fromkeys(collection_ids))
            return [self._collections[cid] for cid in wanted if cid in self._collections]


__all__ = ["DEFAULT_AVG_DOC_LENGTH", "InMemoryCollection", "InMemoryDatabase"]
