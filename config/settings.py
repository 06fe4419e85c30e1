# Path: config/settings.py
# Purpose: Provide typed application configuration models.
# Layer: config.
# Details: Centralizes storage paths, locking, tag pool graph parameters, and retrieval engine tuning.

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class TagPoolSettings(BaseModel):
    """Settings for the per-model tag pool neighbor graph."""

    m: int = Field(default=16, description="Graph fan-out (links per node) of the neighbor index.")
    ef_construction: int = Field(default=200, description="Candidate breadth used while building the graph.")
    ef_search_floor: int = Field(default=50, description="Lower bound for the query-time candidate breadth.")


class EngineSettings(BaseModel):
    """Tuning constants shared by the retrieval engines."""

    bm25_k1: float = Field(default=1.2, description="Saturation constant of the length-normalized cosine.")
    bm25_b: float = Field(default=0.75, description="Length normalization strength.")
    default_limit: int = Field(default=20, description="Result cap when the query does not set one.")
    vector_default_limit: int = Field(default=10, description="Result cap of the vector engine.")
    tag_neighbors: int = Field(default=40, description="Tags fetched per query by the vector engine.")
    refraction_index: float = Field(default=0.6, description="Pull toward the required-tag lens center.")
    auto_refraction_index: float = Field(default=0.3, description="Pull toward automatically selected tags.")
    auto_refraction_tags: int = Field(default=3, description="Tags used for automatic refraction.")
    lens_neighbors: int = Field(default=80, description="Tags woven into the lens affinity graph.")
    history_decay: float = Field(default=0.5, description="Exponential decay rate of history vectors.")
    laplacian_lambda: float = Field(default=0.01, description="Tikhonov regularization of the graph Laplacian.")
    texture: str = Field(default="coarse", description="Affinity exponent: coarse squares, fine takes the root.")
    residual_layers: int = Field(default=4, description="Maximum residual mining depth of the blender.")
    residual_k: int = Field(default=5, description="Tags extracted per residual layer.")
    layer_decay: float = Field(default=0.7, description="Weight decay applied per residual layer.")
    energy_threshold: float = Field(default=0.1, description="Residual energy ratio that stops mining.")


class AppSettings(BaseModel):
    """Top-level application settings shared across services and interfaces."""

    storage_root: Path = Field(default=Path("storage"), description="Root folder holding the knowledge directory.")
    log_level: str = Field(default="INFO", description="Verbosity level for application logs.")
    default_engine: str = Field(default="keyword", description="Fallback retrieval engine identifier.")
    embedding_cache_max_items: int = Field(default=1000, description="Capacity of the embedding cache.")
    warmup_workers: int = Field(default=4, description="Worker threads used while hydrating collections.")
    lock_timeout: Optional[float] = Field(default=30.0, description="Seconds to wait for a lock; None waits forever.")
    show_progress: bool = Field(default=False, description="Render progress bars for warmup and imports.")
    api_enabled: bool = Field(default=False, description="Flag indicating if the HTTP API should be initialized.")
    tag_pool: TagPoolSettings = Field(default_factory=TagPoolSettings)
    engines: EngineSettings = Field(default_factory=EngineSettings)

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Instantiate settings from KNOWLEDGE_* environment variables when available."""

        overrides = {}
        if "KNOWLEDGE_STORAGE_ROOT" in os.environ:
            overrides["storage_root"] = Path(os.environ["KNOWLEDGE_STORAGE_ROOT"])
        if "KNOWLEDGE_LOG_LEVEL" in os.environ:
            overrides["log_level"] = os.environ["KNOWLEDGE_LOG_LEVEL"]
        if "KNOWLEDGE_DEFAULT_ENGINE" in os.environ:
            overrides["default_engine"] = os.environ["KNOWLEDGE_DEFAULT_ENGINE"]
        if "KNOWLEDGE_CACHE_MAX_ITEMS" in os.environ:
            overrides["embedding_cache_max_items"] = int(os.environ["KNOWLEDGE_CACHE_MAX_ITEMS"])
        return cls(**overrides)

    @classmethod
    def from_file(cls, path: Path) -> "AppSettings":
        """Load settings from a JSON document; missing keys keep their defaults."""

        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(payload)


__all__ = ["AppSettings", "EngineSettings", "TagPoolSettings"]
