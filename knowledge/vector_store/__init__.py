# Path: knowledge/vector_store/__init__.py
# Purpose: Package initializer for vector storage backends.
# Layer: knowledge/vector_store.
# Details: Exposes the per-collection vector matrix and the per-model tag pool.

from .tag_pool import ModelTagPool, TagPoolManager
from .vector_matrix import VectorMatrix

__all__ = ["ModelTagPool", "TagPoolManager", "VectorMatrix"]
