# Path: knowledge/search/pipeline.py
# Purpose: Orchestrate retrieval by resolving an engine and shaping the query payload.
# Layer: knowledge/search.
# Details: Small fixed registry of engines keyed by id; unknown ids raise NotFoundError.

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from knowledge.errors import NotFoundError
from knowledge.models.domain import EngineInfo, ScoredResult, SearchFilters, TextPayload, VectorPayload
from .base import RetrievalContext, RetrievalEngine
from .blender import BlenderRetrievalEngine
from .keyword import KeywordRetrievalEngine
from .lens import LensRetrievalEngine
from .vector import VectorRetrievalEngine

if TYPE_CHECKING:
    from config.settings import EngineSettings

logger = logging.getLogger(__name__)


def build_default_engines(settings: Optional["EngineSettings"] = None) -> Dict[str, RetrievalEngine]:
    """Instantiate the four built-in engines, tuned from settings when given."""

    if settings is None:
        engines: List[RetrievalEngine] = [
            KeywordRetrievalEngine(),
            VectorRetrievalEngine(),
            LensRetrievalEngine(),
            BlenderRetrievalEngine(),
        ]
    else:
        engines = [
            KeywordRetrievalEngine(default_limit=settings.default_limit),
            VectorRetrievalEngine(
                k1=settings.bm25_k1,
                b=settings.bm25_b,
                default_limit=settings.vector_default_limit,
                tag_neighbors=settings.tag_neighbors,
            ),
            LensRetrievalEngine(
                refraction_index=settings.refraction_index,
                auto_refraction_index=settings.auto_refraction_index,
                auto_refraction_tags=settings.auto_refraction_tags,
                neighbors=settings.lens_neighbors,
                history_decay=settings.history_decay,
                regularization=settings.laplacian_lambda,
                texture=settings.texture,
                default_limit=settings.default_limit,
            ),
            BlenderRetrievalEngine(
                max_residual_layers=settings.residual_layers,
                k_per_layer=settings.residual_k,
                layer_decay=settings.layer_decay,
                energy_threshold=settings.energy_threshold,
                k1=settings.bm25_k1,
                b=settings.bm25_b,
                default_limit=settings.default_limit,
            ),
        ]
    return {engine.id: engine for engine in engines}


class SearchPipeline:
    """High-level service bridging API/CLI layers with the retrieval engines."""

    def __init__(
        self,
        context: RetrievalContext,
        engines: Optional[Dict[str, RetrievalEngine]] = None,
        default_engine: str = KeywordRetrievalEngine.id,
    ) -> None:
        self.context = context
        self.engines: Dict[str, RetrievalEngine] = engines or build_default_engines()
        self.default_engine = default_engine

    def get_engine(self, engine_id: Optional[str] = None) -> RetrievalEngine:
        resolved = engine_id or self.default_engine
        engine = self.engines.get(resolved)
        if engine is None:
            raise NotFoundError(f"Retrieval engine {resolved} not found")
        return engine

    def list_engines(self) -> List[EngineInfo]:
        return [engine.info() for engine in self.engines.values()]

    def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        engine_id: Optional[str] = None,
        vector: Optional[Sequence[float]] = None,
        model: Optional[str] = None,
    ) -> List[ScoredResult]:
        """
        Build the payload for a query and run it through the selected engine.

        A text payload is used when no vector is supplied; otherwise the vector travels with its
        model id and the raw text, if any.

        External calls:
        - knowledge/search/base.py::RetrievalEngine.search - score and rank AKUs.
        """

        engine = self.get_engine(engine_id)
        filters = filters or SearchFilters()
        if vector is not None:
            payload = VectorPayload(vector=list(vector), model=model or "", query=query or None)
        else:
            payload = TextPayload(text=query)

        started = time.perf_counter()
        results = engine.search(payload, filters, self.context)
        logger.info(
            "Search via %s returned %d result(s) in %.1f ms",
            engine.id,
            len(results),
            (time.perf_counter() - started) * 1000.0,
        )
        return results


__all__ = ["SearchPipeline", "build_default_engines"]
