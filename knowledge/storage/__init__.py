# Path: knowledge/storage/__init__.py
# Purpose: Package initializer for persistence and in-memory state.
# Layer: knowledge/storage.
# Details: Exposes the on-disk layout, locks, the in-memory database, and the warmup pipeline.

from .layout import StorageLayout, VectorRecord, safe_model_id
from .locks import RWLock
from .database import InMemoryCollection, InMemoryDatabase
from .loader import WarmupPipeline, load_entries, load_meta_only, load_vectors, scan_all_vectorized_models

__all__ = [
    "InMemoryCollection",
    "InMemoryDatabase",
    "RWLock",
    "StorageLayout",
    "VectorRecord",
    "WarmupPipeline",
    "load_entries",
    "load_meta_only",
    "load_vectors",
    "safe_model_id",
    "scan_all_vectorized_models",
]
