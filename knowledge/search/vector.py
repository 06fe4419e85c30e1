# Path: knowledge/search/vector.py
# Purpose: Dense vector retrieval with length normalization and tag resonance.
# Layer: knowledge/search.
# Details: Cosine similarity over the collection matrix, BM25-style saturation, tag pool neighbors as a secondary signal.

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import numpy as np

from knowledge.models.domain import QueryPayload, ScoredResult, SearchFilters, VectorPayload
from knowledge.storage.database import InMemoryCollection
from knowledge.vector_store.linalg import as_vector
from .base import (
    LIMIT_PARAMETER,
    MIN_SCORE_PARAMETER,
    PAYLOAD_VECTOR,
    CollectionOverrides,
    RetrievalContext,
    RetrievalEngine,
    apply_min_scores,
    ensure_model_vectors,
    indexed_tag_pool,
    make_result,
    passes_filters,
    priority_boost,
    resolve_limit,
    select_collections,
    sort_by_score,
    truncate_collection,
)

logger = logging.getLogger(__name__)

DEFAULT_K1 = 1.2
DEFAULT_B = 0.75
DEFAULT_LIMIT = 10
DEFAULT_TAG_NEIGHBORS = 40

VECTOR_WEIGHT = 0.8
TAG_WEIGHT = 0.2
TAG_ONLY_THRESHOLD = 0.5
TAG_ONLY_WEIGHT = 0.6
TAG_FALLBACK_WEIGHT = 0.8
PREFILTER_RATIO = 0.6
TITLE_LITERAL_BOOST = 0.2
CONTENT_LITERAL_BOOST = 0.05


def length_adjusted(cos: np.ndarray, doc_lengths: np.ndarray, avg_length: float, k1: float, b: float) -> np.ndarray:
    """BM25-style saturation of cosine scores: ``cos*(k1+1) / (cos + k1*(1 - b + b*len/avg))``."""

    avg = avg_length if avg_length > 0 else 1.0
    l_factor = 1.0 - b + b * (doc_lengths / avg)
    denom = cos + k1 * l_factor
    safe = np.where(np.abs(denom) > 1e-12, denom, 1.0)
    return np.where(np.abs(denom) > 1e-12, cos * (k1 + 1.0) / safe, 0.0)


def shape_scores(results: List[ScoredResult]) -> None:
    """Compress boosted scores above 1 and stretch slightly toward relative rank.

    ``results`` must be sorted best first; the range is taken before compression.
    """

    if not results:
        return
    top = results[0].score
    bottom = results[-1].score
    spread = top - bottom
    for result in results:
        if result.score > 1.0:
            result.score = 1.0 - 1.0 / (result.score + 0.5)
        if spread > 0.001:
            relative = (result.score - bottom) / spread
            result.score = result.score * 0.9 + relative * 0.1


class VectorRetrievalEngine(RetrievalEngine):
    """Semantic search over precomputed AKU vectors."""

    id = "vector"
    name = "Vector search"
    description = "Cosine similarity over AKU embeddings with length normalization and tag resonance."
    icon = "lucide:brain"
    supported_payload_types = [PAYLOAD_VECTOR]
    requires_embedding = True
    parameters = [
        {
            "id": "k1",
            "label": "Saturation (k1)",
            "component": "SliderWithInput",
            "modelPath": "k1",
            "defaultValue": DEFAULT_K1,
            "hint": "How quickly similarity saturates",
            "props": {"min": 0.1, "max": 3.0, "step": 0.1},
        },
        {
            "id": "b",
            "label": "Length normalization (b)",
            "component": "SliderWithInput",
            "modelPath": "b",
            "defaultValue": DEFAULT_B,
            "hint": "How strongly long documents are penalized",
            "props": {"min": 0.0, "max": 1.0, "step": 0.05},
        },
        LIMIT_PARAMETER,
        MIN_SCORE_PARAMETER,
    ]

    def __init__(
        self,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
        default_limit: int = DEFAULT_LIMIT,
        tag_neighbors: int = DEFAULT_TAG_NEIGHBORS,
    ) -> None:
        self.k1 = k1
        self.b = b
        self.default_limit = default_limit
        self.tag_neighbors = tag_neighbors

    def search(self, payload: QueryPayload, filters: SearchFilters, context: RetrievalContext) -> List[ScoredResult]:
        if not isinstance(payload, VectorPayload):
            logger.warning("Vector search needs a vector payload; got %s", type(payload).__name__)
            return []

        query = as_vector(payload.vector)
        model_id = payload.model
        raw_query = (payload.query or "").lower()
        logger.info("Vector search started: model=%s, dim=%d, limit=%s", model_id, query.size, filters.limit)

        pool = indexed_tag_pool(context, model_id)
        neighbors = pool.search_neighbors(query, self.tag_neighbors) if pool is not None else []
        neighbor_tags = [(pool.get_tag_name(idx), sim) for idx, sim in neighbors] if pool is not None else []

        results: List[ScoredResult] = []
        floors: Dict[str, Optional[float]] = {}
        for collection in select_collections(context, filters):
            has_vectors = ensure_model_vectors(context, collection, model_id)
            with collection.lock.read():
                overrides = CollectionOverrides.from_collection(collection)
                floors[collection.id] = overrides.min_score
                resident = has_vectors and (not model_id or collection.vector_store.model_id == model_id)
                hits = self._score_collection(collection, query, raw_query, neighbor_tags, resident, filters, overrides)
            if hits is None:
                continue
            results.extend(truncate_collection(hits, overrides.top_k))

        sort_by_score(results)
        shape_scores(results)
        sort_by_score(results)
        results = apply_min_scores(results, floors, filters.min_score)
        results = results[: resolve_limit(filters, self.default_limit)]
        logger.info(
            "Vector search finished: returned=%d, top=%s",
            len(results),
            results[0].score if results else None,
        )
        return results

    def _score_collection(
        self,
        collection: InMemoryCollection,
        query: np.ndarray,
        raw_query: str,
        neighbor_tags: List,
        has_vectors: bool,
        filters: SearchFilters,
        overrides: CollectionOverrides,
    ) -> Optional[List[ScoredResult]]:
        """Score one collection; the caller holds its read lock. None means the collection is skipped."""

        tag_scores = self._tag_scores(collection, neighbor_tags)
        matrix = collection.vector_store
        dimension = matrix.dimension if has_vectors else 0

        if dimension == 0:
            logger.warning("Collection %s has no vectors for this model; using tag recall only", collection.id)
            hits = []
            for aku_id, tag_score in tag_scores.items():
                aku = collection.entries.get(aku_id)
                if aku is None or not passes_filters(aku, filters) or tag_score <= TAG_ONLY_THRESHOLD:
                    continue
                hits.append(make_result(aku, tag_score * TAG_FALLBACK_WEIGHT, "tag_vector", collection))
            return hits

        if dimension != query.size:
            logger.error(
                "Dimension mismatch, skipping collection %s: stored=%d, query=%d",
                collection.id,
                dimension,
                query.size,
            )
            return None

        k1 = filters.k1 if filters.k1 is not None else self.k1
        b = filters.b if filters.b is not None else self.b
        cos = matrix.cosine_scores(query)
        doc_lengths = np.array(
            [len(collection.entries[aku_id].content) if aku_id in collection.entries else 0 for aku_id in matrix.ids],
            dtype=np.float32,
        )
        adjusted = length_adjusted(cos, doc_lengths, collection.average_content_length(), k1, b)

        floor = overrides.effective_min_score(filters)
        hits: List[ScoredResult] = []
        matched = set()
        for position, aku_id in enumerate(matrix.ids):
            if floor is not None and cos[position] < floor * PREFILTER_RATIO:
                continue
            aku = collection.entries.get(aku_id)
            if aku is None or not passes_filters(aku, filters):
                continue
            literal = 0.0
            if raw_query:
                if raw_query in aku.key.lower():
                    literal += TITLE_LITERAL_BOOST
                if raw_query in aku.content.lower():
                    literal += CONTENT_LITERAL_BOOST
            score = (
                float(adjusted[position]) * VECTOR_WEIGHT
                + tag_scores.get(aku_id, 0.0) * TAG_WEIGHT
                + priority_boost(aku.priority)
                + literal
            )
            hits.append(make_result(aku, score, "vector", collection))
            matched.add(aku_id)

        for aku_id, tag_score in tag_scores.items():
            if aku_id in matched or tag_score <= TAG_ONLY_THRESHOLD:
                continue
            aku = collection.entries.get(aku_id)
            if aku is None or not passes_filters(aku, filters):
                continue
            hits.append(make_result(aku, tag_score * TAG_ONLY_WEIGHT, "tag_vector", collection))
        logger.debug("Collection %s: %d vector hits", collection.id, len(hits))
        return hits

    @staticmethod
    def _tag_scores(collection: InMemoryCollection, neighbor_tags: List) -> Dict[str, float]:
        """Best neighbor similarity per AKU carrying any of the neighboring tags."""

        best_by_tag: Dict[str, float] = {}
        for name, similarity in neighbor_tags:
            if name is not None and similarity > best_by_tag.get(name, float("-inf")):
                best_by_tag[name] = similarity
        scores: Dict[str, float] = {}
        if not best_by_tag:
            return scores
        for aku in collection.entries.values():
            for tag in aku.tags:
                similarity = best_by_tag.get(tag.name)
                if similarity is not None and similarity > scores.get(aku.id, 0.0):
                    scores[aku.id] = similarity
        return scores


__all__ = ["VectorRetrievalEngine", "length_adjusted", "shape_scores"]
