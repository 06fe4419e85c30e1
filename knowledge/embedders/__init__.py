# Path: knowledge/embedders/__init__.py
# Purpose: Package initializer for embedding helpers.
# Layer: knowledge/embedders.
# Details: Embeddings are produced upstream; this package only caches them per (model, text).

from .cache import EmbeddingCache

__all__ = ["EmbeddingCache"]
