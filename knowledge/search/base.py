# Path: knowledge/search/base.py
# Purpose: Define the retrieval engine contract and the helpers every engine shares.
# Layer: knowledge/search.
# Details: Engines are stateless; per-query state lives in RetrievalContext and local variables.

from __future__ import annotations

import dataclasses
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from knowledge.errors import KnowledgeError
from knowledge.models.domain import (
    Aku,
    EngineInfo,
    QueryPayload,
    ScoredResult,
    SearchFilters,
)
from knowledge.storage.database import InMemoryCollection, InMemoryDatabase
from knowledge.storage.layout import StorageLayout
from knowledge.storage.loader import load_vectors
from knowledge.vector_store.tag_pool import ModelTagPool, TagPoolManager

logger = logging.getLogger(__name__)

PAYLOAD_TEXT = "text"
PAYLOAD_VECTOR = "vector"

LIMIT_PARAMETER = {
    "id": "limit",
    "label": "Result count (Top-K)",
    "component": "SliderWithInput",
    "modelPath": "limit",
    "defaultValue": 20,
    "hint": "Number of most relevant results to return",
    "props": {"min": 1, "max": 100, "step": 1},
}

MIN_SCORE_PARAMETER = {
    "id": "minScore",
    "label": "Minimum relevance score",
    "component": "SliderWithInput",
    "modelPath": "minScore",
    "defaultValue": 0.0,
    "hint": "Drop results scoring below this value",
    "props": {"min": 0, "max": 1, "step": 0.01},
}


@dataclass
class RetrievalContext:
    """Shared services handed to an engine for one search call."""

    database: InMemoryDatabase
    tag_pools: TagPoolManager
    layout: StorageLayout
    workers: int = 4


@dataclass
class CollectionOverrides:
    """Per-collection score floor and result cap read from the collection config."""

    min_score: Optional[float] = None
    top_k: Optional[int] = None

    @classmethod
    def from_collection(cls, collection: InMemoryCollection) -> "CollectionOverrides":
        return cls(
            min_score=collection.meta.config_float("minScore"),
            top_k=collection.meta.config_int("searchTopK"),
        )

    def effective_min_score(self, filters: SearchFilters) -> Optional[float]:
        return self.min_score if self.min_score is not None else filters.min_score


class RetrievalEngine(ABC):
    """Interface for scoring AKUs across the in-memory collections."""

    id: str
    name: str
    description: str
    icon: Optional[str] = None
    supported_payload_types: List[str] = []
    requires_embedding: bool = False
    parameters: List[Dict[str, Any]] = []

    def info(self) -> EngineInfo:
        return EngineInfo(
            id=self.id,
            name=self.name,
            description=self.description,
            supported_payload_types=list(self.supported_payload_types),
            requires_embedding=self.requires_embedding,
            icon=self.icon,
            parameters=[dict(parameter) for parameter in self.parameters],
        )

    @abstractmethod
    def search(self, payload: QueryPayload, filters: SearchFilters, context: RetrievalContext) -> List[ScoredResult]:
        """Return results ordered by descending score; a payload of the wrong kind yields []."""


def passes_filters(aku: Aku, filters: SearchFilters) -> bool:
    """Enabled-only and tag filters; an AKU must carry at least one listed tag."""

    if filters.only_enabled and not aku.enabled:
        return False
    if filters.tags:
        wanted = set(filters.tags)
        if not any(tag.name in wanted for tag in aku.tags):
            return False
    return True


def priority_boost(priority: int) -> float:
    """Log-scaled priority bonus: 0 at or below the default priority of 100."""

    if priority <= 0:
        return 0.0
    return max(math.log10(priority / 100.0), 0.0) * 0.1


def make_result(
    aku: Aku,
    score: float,
    match_type: str,
    collection: InMemoryCollection,
    highlight: Optional[str] = None,
) -> ScoredResult:
    return ScoredResult(
        aku=dataclasses.replace(aku, tags=list(aku.tags)),
        score=float(score),
        match_type=match_type,
        collection_id=collection.id,
        collection_name=collection.name,
        highlight=highlight,
    )


def sort_by_score(results: List[ScoredResult]) -> List[ScoredResult]:
    results.sort(key=lambda result: result.score, reverse=True)
    return results


def truncate_collection(results: List[ScoredResult], top_k: Optional[int]) -> List[ScoredResult]:
    """Sort one collection's results and apply its searchTopK cap."""

    sort_by_score(results)
    if top_k is not None and top_k >= 0:
        del results[top_k:]
    return results


def apply_min_scores(
    results: List[ScoredResult],
    floors: Dict[str, Optional[float]],
    default_floor: Optional[float],
) -> List[ScoredResult]:
    """Drop results below their collection floor, falling back to the query floor."""

    kept = []
    for result in results:
        floor = floors.get(result.collection_id)
        if floor is None:
            floor = default_floor
        if floor is not None and result.score < floor:
            continue
        kept.append(result)
    return kept


def resolve_limit(filters: SearchFilters, default: int) -> int:
    return filters.limit if filters.limit is not None else default


def select_collections(context: RetrievalContext, filters: SearchFilters) -> List[InMemoryCollection]:
    return context.database.collections(filters.collection_ids)


def ensure_model_vectors(context: RetrievalContext, collection: InMemoryCollection, model_id: str) -> bool:
    """
    Make ``model_id`` the resident matrix of a collection, loading it from disk when needed.

    Returns False when the model has no vectors on disk for this collection. The write lock is held
    only while swapping in the rebuilt matrix.

    External calls:
    - knowledge/storage/loader.py::load_vectors - read the model's vector records.
    """

    if not model_id:
        return True
    with collection.lock.read():
        if collection.vector_store.model_id == model_id:
            return True

    logger.info("Hydrating %s vectors for collection %s on demand", model_id, collection.id)
    entries, dimension, total_tokens = load_vectors(context.layout, collection.id, model_id, context.workers)
    if not entries:
        logger.debug("No %s vectors on disk for collection %s", model_id, collection.id)
        return False

    with collection.lock.write():
        if collection.vector_store.model_id != model_id:
            collection.vector_store.rebuild(model_id, dimension, total_tokens, entries)
    return True


def indexed_tag_pool(context: RetrievalContext, model_id: str) -> Optional[ModelTagPool]:
    """Snapshot of the model's tag pool with its neighbor index built, or None without a model."""

    if not model_id:
        return None
    try:
        return context.tag_pools.get_indexed_snapshot(model_id)
    except KnowledgeError as exc:
        logger.warning("Tag pool for %s unavailable: %s", model_id, exc)
        return None


__all__ = [
    "CollectionOverrides",
    "LIMIT_PARAMETER",
    "MIN_SCORE_PARAMETER",
    "PAYLOAD_TEXT",
    "PAYLOAD_VECTOR",
    "RetrievalContext",
    "RetrievalEngine",
    "apply_min_scores",
    "ensure_model_vectors",
    "indexed_tag_pool",
    "make_result",
    "passes_filters",
    "priority_boost",
    "resolve_limit",
    "select_collections",
    "sort_by_score",
    "truncate_collection",
]
