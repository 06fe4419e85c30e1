# Path: knowledge/search/lens.py
# Purpose: Lens retrieval: refract the query through tag centers and diffuse energy over a tag graph.
# Layer: knowledge/search.
# Details: Context projection, refraction, graph weaving, Laplacian inversion via SVD, convergence onto AKUs.

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from knowledge.models.domain import DEFAULT_SEARCH_LIMIT, QueryPayload, ScoredResult, SearchFilters, VectorPayload
from knowledge.vector_store.linalg import as_vector, normalize, normalize_rows
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
    resolve_limit,
    select_collections,
    sort_by_score,
    truncate_collection,
)
from .tag_sea import TagSea

logger = logging.getLogger(__name__)

TEXTURE_COARSE = "coarse"
TEXTURE_FINE = "fine"
SVD_TOLERANCE = 1e-6


def apply_refraction(vector: Sequence[float], center: Sequence[float], index: float) -> np.ndarray:
    """Bend ``vector`` toward ``center``: ``normalize((1 - index) * vector + index * center)``."""

    v, c = as_vector(vector), as_vector(center)
    return normalize((1.0 - index) * v + index * c)


def project_context(query: np.ndarray, history: Optional[List[List[float]]], decay_rate: float) -> np.ndarray:
    """Blend history into the query; the i-th most recent vector weighs ``exp(-rate * (i + 1))``."""

    if not history:
        return query
    projected = query.astype(np.float64).copy()
    for i, values in enumerate(reversed(history)):
        weight = math.exp(-decay_rate * (i + 1))
        past = as_vector(values)
        width = min(past.size, projected.size)
        projected[:width] += past[:width] * weight
    return normalize(projected)


def affinity_matrix(vectors: np.ndarray, texture: str) -> np.ndarray:
    """Pairwise cosine affinity clamped to [0, 1]; coarse squares it, fine takes the square root."""

    unit = normalize_rows(vectors.astype(np.float64))
    sims = np.clip(unit @ unit.T, 0.0, 1.0)
    if texture == TEXTURE_FINE:
        return np.sqrt(sims)
    return sims ** 2


def diffuse_energy(affinity: np.ndarray, initial: np.ndarray, regularization: float) -> np.ndarray:
    """Propagate initial energies through the regularized inverse of the graph Laplacian.

    ``L = D - A`` with the diagonal of A excluded from the degree; the operator is
    ``(L^T L + lambda I)^-1 L^T`` computed through an SVD that drops singular values below 1e-6.
    """

    n = affinity.shape[0]
    laplacian = -affinity.copy()
    np.fill_diagonal(laplacian, affinity.sum(axis=1) - np.diag(affinity))
    target = laplacian.T @ laplacian + regularization * np.eye(n)
    u, singular, vt = np.linalg.svd(target)
    inverse_singular = np.where(singular > SVD_TOLERANCE, 1.0 / np.where(singular > SVD_TOLERANCE, singular, 1.0), 0.0)
    pseudo_inverse = (vt.T * inverse_singular) @ u.T
    return pseudo_inverse @ laplacian.T @ initial


class LensRetrievalEngine(RetrievalEngine):
    """Multi-phase retrieval that focuses the query through tag lenses before graph diffusion."""

    id = "lens"
    name = "Lens search"
    description = "Refracts the query through tag lenses and diffuses relevance across a tag graph."
    icon = "lucide:telescope"
    supported_payload_types = [PAYLOAD_VECTOR]
    requires_embedding = True
    parameters = [
        {
            "id": "texture",
            "label": "Texture",
            "component": "ElRadioGroup",
            "modelPath": "texture",
            "defaultValue": TEXTURE_COARSE,
            "hint": "Coarse focuses on core associations; fine spreads into looser ones",
            "options": [
                {"label": "Coarse", "value": TEXTURE_COARSE},
                {"label": "Fine", "value": TEXTURE_FINE},
            ],
        },
        {
            "id": "refractionIndex",
            "label": "Refraction index",
            "component": "SliderWithInput",
            "modelPath": "refractionIndex",
            "defaultValue": 0.6,
            "hint": "Pull of the required tags on the query",
            "props": {"min": 0, "max": 1, "step": 0.05},
        },
        LIMIT_PARAMETER,
        MIN_SCORE_PARAMETER,
    ]

    def __init__(
        self,
        refraction_index: float = 0.6,
        auto_refraction_index: float = 0.3,
        auto_refraction_tags: int = 3,
        neighbors: int = 80,
        history_decay: float = 0.5,
        regularization: float = 0.01,
        texture: str = TEXTURE_COARSE,
        default_limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> None:
        self.refraction_index = refraction_index
        self.auto_refraction_index = auto_refraction_index
        self.auto_refraction_tags = auto_refraction_tags
        self.neighbors = neighbors
        self.history_decay = history_decay
        self.regularization = regularization
        self.texture = texture
        self.default_limit = default_limit

    def search(self, payload: QueryPayload, filters: SearchFilters, context: RetrievalContext) -> List[ScoredResult]:
        if not isinstance(payload, VectorPayload):
            logger.warning("Lens search needs a vector payload; got %s", type(payload).__name__)
            return []

        query = as_vector(payload.vector)
        model_id = payload.model
        logger.info("Lens search started: model=%s, dim=%d, limit=%s", model_id, query.size, filters.limit)

        pool = indexed_tag_pool(context, model_id)
        if pool is None or not len(pool):
            logger.warning("Lens search found no tag pool for model %s", model_id)
            return []

        results: List[ScoredResult] = []
        floors: Dict[str, Optional[float]] = {}
        for collection in select_collections(context, filters):
            # Lens scoring works from tag vectors; AKU vectors are hydrated for later engines only.
            ensure_model_vectors(context, collection, model_id)
            with collection.lock.read():
                overrides = CollectionOverrides.from_collection(collection)
                floors[collection.id] = overrides.min_score
                tag_sea = TagSea.build(collection.entries.values(), pool)
                logger.debug(
                    "Collection %s: tag sea with %d pool tags, %d local tags",
                    collection.id,
                    len(pool),
                    len(tag_sea.tag_to_akus),
                )
                energies = self.focus(query, filters, tag_sea)
                hits = []
                for aku_id, score in energies.items():
                    aku = collection.entries.get(aku_id)
                    if aku is None or not passes_filters(aku, filters):
                        continue
                    hits.append(make_result(aku, score, "lens", collection))
            results.extend(truncate_collection(hits, overrides.top_k))

        sort_by_score(results)
        if results and results[0].score > 0:
            top = results[0].score
            for result in results:
                result.score /= top
        results = apply_min_scores(results, floors, filters.min_score)
        total = len(results)
        results = results[: resolve_limit(filters, self.default_limit)]
        logger.info(
            "Lens search finished: matched=%d, returned=%d, top=%s",
            total,
            len(results),
            results[0].score if results else None,
        )
        return results

    def refract(self, vector: np.ndarray, filters: SearchFilters, tag_sea: TagSea) -> np.ndarray:
        """Pull toward the required tags, or toward the nearest few tags when none are required."""

        if filters.required_tags:
            center = tag_sea.compute_lens_center(filters.required_tags)
            if center is None:
                return vector
            index = filters.refraction_index if filters.refraction_index is not None else self.refraction_index
            return apply_refraction(vector, center, index)

        nearest = tag_sea.pool.search_neighbors(vector, self.auto_refraction_tags)
        names = [name for name in (tag_sea.pool.get_tag_name(idx) for idx, _ in nearest) if name is not None]
        center = tag_sea.compute_lens_center(names) if names else None
        if center is None:
            return vector
        return apply_refraction(vector, center, self.auto_refraction_index)

    def focus(self, query: np.ndarray, filters: SearchFilters, tag_sea: TagSea) -> Dict[str, float]:
        """
        Run the five lens phases for one collection and return AKU id to diffused energy.

        External calls:
        - knowledge/vector_store/tag_pool.py::ModelTagPool.search_neighbors - weave the tag graph.
        """

        projected = project_context(query, filters.history_vectors, self.history_decay)
        refracted = self.refract(projected, filters, tag_sea)

        neighbors = tag_sea.pool.search_neighbors(refracted, self.neighbors)
        if not neighbors:
            logger.warning("Lens graph weaving found no neighbor tags")
            return {}
        vectors, names, initial = self._gather(tag_sea.pool, neighbors)
        if not names:
            return {}

        texture = filters.texture or self.texture
        affinity = affinity_matrix(vectors, texture)
        energy = diffuse_energy(affinity, initial, self.regularization)

        scores: Dict[str, float] = {}
        for name, value in zip(names, energy):
            for aku_id, weight in tag_sea.akus_for(name):
                scores[aku_id] = scores.get(aku_id, 0.0) + float(value) * weight
        return scores

    @staticmethod
    def _gather(pool: ModelTagPool, neighbors: List[Tuple[int, float]]) -> Tuple[np.ndarray, List[str], np.ndarray]:
        rows = []
        names = []
        energies = []
        for idx, similarity in neighbors:
            vector = pool.get_vector(idx)
            name = pool.get_tag_name(idx)
            if vector is None or name is None:
                continue
            rows.append(vector)
            names.append(name)
            energies.append(similarity)
        if not rows:
            return np.empty((0, 0)), [], np.empty(0)
        return np.vstack(rows), names, np.asarray(energies, dtype=np.float64)


__all__ = ["LensRetrievalEngine", "affinity_matrix", "apply_refraction", "diffuse_energy", "project_context"]
