# Path: knowledge/search/__init__.py
# Purpose: Package initializer for retrieval engines and pipeline orchestration.
# Layer: knowledge/search.
# Details: Exposes the engine contract, the four built-in engines, the Tag Sea, and the search pipeline.

from .base import RetrievalContext, RetrievalEngine
from .blender import BlenderRetrievalEngine
from .keyword import KeywordRetrievalEngine
from .lens import LensRetrievalEngine
from .tag_sea import TagSea
from .vector import VectorRetrievalEngine
from .pipeline import SearchPipeline, build_default_engines

__all__ = [
    "SearchPipeline",
    "RetrievalContext",
    "RetrievalEngine",
    "KeywordRetrievalEngine",
    "VectorRetrievalEngine",
    "LensRetrievalEngine",
    "BlenderRetrievalEngine",
    "TagSea",
    "build_default_engines",
]
