# Path: knowledge/search/blender.py
# Purpose: Blended retrieval fusing literal, semantic, and gravitational signals with resonance boosts.
# Layer: knowledge/search.
# Details: Gravitational signal comes from residual mining of the query against the tag pool.

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from knowledge.indexing.text import segment
from knowledge.models.domain import DEFAULT_SEARCH_LIMIT, QueryPayload, ScoredResult, SearchFilters, VectorPayload
from knowledge.storage.database import InMemoryCollection
from knowledge.vector_store.linalg import EPSILON, as_vector, project_onto, projection_coeff
from knowledge.vector_store.tag_pool import ModelTagPool
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
from .tag_sea import TagSea
from .vector import DEFAULT_B, DEFAULT_K1, length_adjusted

logger = logging.getLogger(__name__)

EXACT_TITLE_BONUS = 10.0
PARTIAL_TITLE_BONUS = 5.0
SEMANTIC_ACTIVATION = 0.3
RESONANCE_BOOSTS = {3: 1.3, 2: 1.1, 1: 0.9}

ActivatedTag = Tuple[str, float, int]


def residual_mining(
    query: np.ndarray,
    pool: ModelTagPool,
    max_layers: int,
    k_per_layer: int,
    layer_decay: float,
    energy_threshold: float,
) -> List[ActivatedTag]:
    """Peel tag-aligned components off the query layer by layer.

    Each layer takes the ``k_per_layer`` tags nearest to the current residual, records
    ``|projection coefficient| * similarity * layer_decay**layer`` for each, and subtracts their
    summed projections. Mining stops after ``max_layers`` or once the residual keeps less than
    ``energy_threshold`` of the original squared norm.
    """

    residual = as_vector(query).astype(np.float64)
    original_energy = float(residual @ residual)
    activated: List[ActivatedTag] = []
    if original_energy < EPSILON:
        return activated

    for layer in range(max_layers):
        if float(residual @ residual) / original_energy < energy_threshold:
            break
        neighbors = pool.search_neighbors(residual, k_per_layer)
        if not neighbors:
            break
        reduction = np.zeros_like(residual)
        for idx, similarity in neighbors:
            tag_vector = pool.get_vector(idx)
            name = pool.get_tag_name(idx)
            if tag_vector is None or name is None:
                continue
            coeff = projection_coeff(residual, tag_vector)
            activated.append((name, abs(coeff) * similarity * layer_decay**layer, layer))
            reduction += project_onto(residual, tag_vector)
        residual = residual - reduction
    return activated


def signal_weights(query_text: Optional[str]) -> Tuple[float, float, float]:
    """Literal, semantic, and gravity weights; longer queries lean away from literal matching."""

    if query_text is None:
        return 0.0, 0.55, 0.45
    entropy = min(len(segment(query_text)) / 10.0, 1.0)
    literal = 0.4 * (1.0 - entropy) + 0.1 * entropy
    semantic = 0.2 * (1.0 - entropy) + 0.5 * entropy
    gravity = 0.4 * (1.0 - entropy) + 0.4 * entropy
    return literal, semantic, gravity


def _max_or_floor(scores: Dict[str, float]) -> float:
    return max(max(scores.values(), default=0.0), EPSILON)


class BlenderRetrievalEngine(RetrievalEngine):
    """Fusion engine combining three independent signals per candidate."""

    id = "blender"
    name = "Blended search"
    description = "Residual mining plus multi-signal resonance over literal, semantic, and tag evidence."
    icon = "lucide:blend"
    supported_payload_types = [PAYLOAD_VECTOR]
    requires_embedding = True
    parameters = [
        LIMIT_PARAMETER,
        MIN_SCORE_PARAMETER,
        {
            "id": "maxResidualLayers",
            "label": "Residual depth",
            "component": "SliderWithInput",
            "modelPath": "maxResidualLayers",
            "defaultValue": 4,
            "hint": "Maximum residual mining depth",
            "props": {"min": 1, "max": 8, "step": 1},
        },
        {
            "id": "layerDecay",
            "label": "Layer decay",
            "component": "SliderWithInput",
            "modelPath": "layerDecay",
            "defaultValue": 0.7,
            "hint": "Weight decay applied per residual layer",
            "props": {"min": 0.1, "max": 1.0, "step": 0.05},
        },
    ]

    def __init__(
        self,
        max_residual_layers: int = 4,
        k_per_layer: int = 5,
        layer_decay: float = 0.7,
        energy_threshold: float = 0.1,
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
        default_limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> None:
        self.max_residual_layers = max_residual_layers
        self.k_per_layer = k_per_layer
        self.layer_decay = layer_decay
        self.energy_threshold = energy_threshold
        self.k1 = k1
        self.b = b
        self.default_limit = default_limit

    def search(self, payload: QueryPayload, filters: SearchFilters, context: RetrievalContext) -> List[ScoredResult]:
        if not isinstance(payload, VectorPayload):
            logger.warning("Blended search needs a vector payload; got %s", type(payload).__name__)
            return []

        query = as_vector(payload.vector)
        model_id = payload.model
        query_text = payload.query or None
        logger.info("Blended search started: model=%s, dim=%d, query=%r", model_id, query.size, query_text)

        max_layers = self._extra_int(filters, "maxResidualLayers", self.max_residual_layers)
        layer_decay = self._extra_float(filters, "layerDecay", self.layer_decay)

        pool = indexed_tag_pool(context, model_id)
        activated: List[ActivatedTag] = []
        if pool is not None:
            activated = residual_mining(query, pool, max_layers, self.k_per_layer, layer_decay, self.energy_threshold)
            logger.debug("Residual mining activated %d tag(s)", len(activated))
        weights = signal_weights(query_text)

        results: List[ScoredResult] = []
        floors: Dict[str, Optional[float]] = {}
        for collection in select_collections(context, filters):
            ensure_model_vectors(context, collection, model_id)
            with collection.lock.read():
                overrides = CollectionOverrides.from_collection(collection)
                floors[collection.id] = overrides.min_score
                hits = self._blend_collection(collection, query, model_id, query_text, pool, activated, weights, filters)
            results.extend(truncate_collection(hits, overrides.top_k))

        sort_by_score(results)
        if results and results[0].score > 0:
            top = results[0].score
            for result in results:
                result.score /= top
        results = apply_min_scores(results, floors, filters.min_score)
        results = results[: resolve_limit(filters, self.default_limit)]
        logger.info(
            "Blended search finished: returned=%d, top=%s",
            len(results),
            results[0].score if results else None,
        )
        return results

    def _blend_collection(
        self,
        collection: InMemoryCollection,
        query: np.ndarray,
        model_id: str,
        query_text: Optional[str],
        pool: Optional[ModelTagPool],
        activated: List[ActivatedTag],
        weights: Tuple[float, float, float],
        filters: SearchFilters,
    ) -> List[ScoredResult]:
        """Score one collection; the caller holds its read lock."""

        literal = self._literal_scores(collection, query_text)
        semantic = self._semantic_scores(collection, query, model_id)
        gravity: Dict[str, float] = {}
        if pool is not None and activated:
            tag_sea = TagSea.build(collection.entries.values(), pool)
            for name, tag_weight, _layer in activated:
                idf = tag_sea.entropy(name)
                for aku_id, aku_weight in tag_sea.akus_for(name):
                    gravity[aku_id] = gravity.get(aku_id, 0.0) + tag_weight * aku_weight * idf

        max_literal = _max_or_floor(literal)
        max_semantic = _max_or_floor(semantic)
        max_gravity = _max_or_floor(gravity)
        w_literal, w_semantic, w_gravity = weights

        hits: List[ScoredResult] = []
        for aku_id in set(literal) | set(semantic) | set(gravity):
            aku = collection.entries.get(aku_id)
            if aku is None or not passes_filters(aku, filters):
                continue
            l_score = literal.get(aku_id, 0.0)
            s_score = semantic.get(aku_id, 0.0)
            g_score = gravity.get(aku_id, 0.0)
            activations = (l_score > 0.0) + (s_score > SEMANTIC_ACTIVATION) + (g_score > 0.0)
            boost = RESONANCE_BOOSTS.get(activations, 0.0)
            if boost <= 0.0:
                continue
            combined = (
                w_literal * l_score / max_literal
                + w_semantic * s_score / max_semantic
                + w_gravity * g_score / max_gravity
            )
            score = combined * boost * (1.0 + priority_boost(aku.priority))
            hits.append(make_result(aku, score, "blender", collection))
        return hits

    @staticmethod
    def _literal_scores(collection: InMemoryCollection, query_text: Optional[str]) -> Dict[str, float]:
        if query_text is None:
            return {}
        scores = dict(collection.text_index.search(query_text))
        needle = query_text.lower()
        for aku in collection.entries.values():
            key = aku.key.lower()
            if key == needle:
                scores[aku.id] = scores.get(aku.id, 0.0) + EXACT_TITLE_BONUS
            elif needle in key:
                scores[aku.id] = scores.get(aku.id, 0.0) + PARTIAL_TITLE_BONUS
        return scores

    def _semantic_scores(self, collection: InMemoryCollection, query: np.ndarray, model_id: str) -> Dict[str, float]:
        matrix = collection.vector_store
        if matrix.dimension == 0 or matrix.dimension != query.size:
            return {}
        if model_id and matrix.model_id != model_id:
            return {}
        cos = matrix.cosine_scores(query)
        doc_lengths = np.array(
            [len(collection.entries[aku_id].content) if aku_id in collection.entries else 0 for aku_id in matrix.ids],
            dtype=np.float32,
        )
        adjusted = length_adjusted(cos, doc_lengths, collection.average_content_length(), self.k1, self.b)
        return {aku_id: float(score) for aku_id, score in zip(matrix.ids, adjusted)}

    @staticmethod
    def _extra_int(filters: SearchFilters, key: str, default: int) -> int:
        value = filters.extra.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return default
        return int(value)

    @staticmethod
    def _extra_float(filters: SearchFilters, key: str, default: float) -> float:
        value = filters.extra.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        return float(value)


__all__ = ["BlenderRetrievalEngine", "residual_mining", "signal_weights"]
