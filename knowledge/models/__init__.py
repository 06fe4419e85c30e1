# Path: knowledge/models/__init__.py
# Purpose: Package initializer for domain models.
# Layer: knowledge/models.
# Details: Re-exports the dataclasses shared across storage, indexing, and search.

from .domain import (
    Aku,
    AkuIndexItem,
    AkuPatch,
    BatchImportResult,
    CollectionMeta,
    EngineInfo,
    ImportConfig,
    LibraryStats,
    LoadStats,
    QueryPayload,
    ScoredResult,
    SearchFilters,
    TagWithWeight,
    TextPayload,
    VectorCoverage,
    VectorizationMeta,
    VectorPayload,
)

__all__ = [
    "Aku",
    "AkuIndexItem",
    "AkuPatch",
    "BatchImportResult",
    "CollectionMeta",
    "EngineInfo",
    "ImportConfig",
    "LibraryStats",
    "LoadStats",
    "QueryPayload",
    "ScoredResult",
    "SearchFilters",
    "TagWithWeight",
    "TextPayload",
    "VectorCoverage",
    "VectorizationMeta",
    "VectorPayload",
]
