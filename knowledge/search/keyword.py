# Path: knowledge/search/keyword.py
# Purpose: Keyword retrieval over each collection's inverted index.
# Layer: knowledge/search.
# Details: Term frequency plus tag and title bonuses, log-compressed into 0..1 across collections.

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

from knowledge.indexing.text import extract_highlight
from knowledge.models.domain import DEFAULT_SEARCH_LIMIT, QueryPayload, ScoredResult, SearchFilters, TextPayload
from .base import (
    LIMIT_PARAMETER,
    MIN_SCORE_PARAMETER,
    PAYLOAD_TEXT,
    CollectionOverrides,
    RetrievalContext,
    RetrievalEngine,
    apply_min_scores,
    make_result,
    passes_filters,
    resolve_limit,
    select_collections,
    sort_by_score,
    truncate_collection,
)

logger = logging.getLogger(__name__)

TITLE_MATCH_BONUS = 10.0


class KeywordRetrievalEngine(RetrievalEngine):
    """Literal keyword matching against the inverted index."""

    id = "keyword"
    name = "Keyword search"
    description = "Classic inverted-index keyword matching for exact literal hits."
    icon = "lucide:search"
    supported_payload_types = [PAYLOAD_TEXT]
    requires_embedding = False
    parameters = [LIMIT_PARAMETER, MIN_SCORE_PARAMETER]

    def __init__(self, default_limit: int = DEFAULT_SEARCH_LIMIT) -> None:
        self.default_limit = default_limit

    def search(self, payload: QueryPayload, filters: SearchFilters, context: RetrievalContext) -> List[ScoredResult]:
        if not isinstance(payload, TextPayload):
            return []
        query = payload.text
        query_lower = query.lower()
        logger.info("Keyword search started: query=%r", query)

        results: List[ScoredResult] = []
        floors: Dict[str, Optional[float]] = {}
        for collection in select_collections(context, filters):
            with collection.lock.read():
                overrides = CollectionOverrides.from_collection(collection)
                floors[collection.id] = overrides.min_score
                candidates = collection.text_index.search(query)
                logger.debug("Collection %s: %d keyword candidates", collection.id, len(candidates))

                hits: List[ScoredResult] = []
                for aku_id, index_score in candidates:
                    aku = collection.entries.get(aku_id)
                    if aku is None or not passes_filters(aku, filters):
                        continue
                    score = index_score
                    if query_lower and query_lower in aku.key.lower():
                        score += TITLE_MATCH_BONUS
                    hits.append(make_result(aku, score, "keyword", collection, extract_highlight(aku.content, query)))
            results.extend(truncate_collection(hits, overrides.top_k))

        sort_by_score(results)
        if results and results[0].score > 0:
            scale = math.log1p(results[0].score)
            for result in results:
                result.score = math.log1p(result.score) / scale

        results = apply_min_scores(results, floors, filters.min_score)
        total = len(results)
        results = results[: resolve_limit(filters, self.default_limit)]
        logger.info(
            "Keyword search finished: matched=%d, returned=%d, top=%s",
            total,
            len(results),
            results[0].score if results else None,
        )
        return results


__all__ = ["KeywordRetrievalEngine"]
