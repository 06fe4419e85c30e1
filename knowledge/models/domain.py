# Path: knowledge/models/domain.py
# Purpose: Define domain models shared across storage, indexing, and retrieval workflows.
# Layer: knowledge/models.
# Details: Lightweight dataclasses with camelCase to_dict/from_dict helpers matching the persisted JSON.

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

VECTOR_STATUS_NONE = "none"
VECTOR_STATUS_READY = "ready"

DEFAULT_PRIORITY = 100
DEFAULT_SEARCH_LIMIT = 20


def now_ts() -> int:
    """Return the current unix timestamp in seconds."""

    return int(time.time())


def new_id() -> str:
    """Return a fresh globally unique identifier."""

    return str(uuid.uuid4())


@dataclass
class TagWithWeight:
    """Tag reference attached to an AKU with its in-document weight."""

    name: str
    weight: float = 1.0
    hash: str = ""

    def to_dict(self) -> Dict:
        return {"name": self.name, "weight": self.weight, "hash": self.hash}

    @classmethod
    def from_dict(cls, payload: Union[Dict, str]) -> "TagWithWeight":
        if isinstance(payload, str):
            return cls(name=payload)
        return cls(
            name=str(payload["name"]),
            weight=float(payload.get("weight", 1.0)),
            hash=str(payload.get("hash") or ""),
        )


@dataclass
class Aku:
    """Atomic knowledge unit: one indexable record with title, body, and tags."""

    id: str
    key: str
    content: str
    summary: str = ""
    tags: List[TagWithWeight] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True
    created_at: int = 0
    updated_at: int = 0
    content_hash: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def create(
        cls,
        key: str,
        content: str,
        tags: Optional[List[Union[TagWithWeight, Dict, str]]] = None,
        priority: int = DEFAULT_PRIORITY,
        enabled: bool = True,
    ) -> "Aku":
        """Build a new AKU with a fresh id and current timestamps.

        Tags may be ``TagWithWeight`` objects, bare names, or their ``{"name", "weight"}`` JSON form.
        """

        ts = now_ts()
        return cls(
            id=new_id(),
            key=key,
            content=content,
            tags=[tag if isinstance(tag, TagWithWeight) else TagWithWeight.from_dict(tag) for tag in tags or []],
            priority=priority,
            enabled=enabled,
            created_at=ts,
            updated_at=ts,
        )

    def tag_names(self) -> List[str]:
        return [tag.name for tag in self.tags]

    def to_index_item(self, vector_status: str, vectorized_models: List[str]) -> "AkuIndexItem":
        """Project the AKU onto its lightweight metadata index entry."""

        return AkuIndexItem(
            id=self.id,
            key=self.key,
            summary=self.summary,
            tags=self.tag_names(),
            priority=self.priority,
            updated_at=self.updated_at,
            vector_status=vector_status,
            content_hash=self.content_hash,
            vectorized_models=list(vectorized_models),
        )

    def to_dict(self) -> Dict:
        payload = {
            "id": self.id,
            "key": self.key,
            "content": self.content,
            "summary": self.summary,
            "tags": [tag.to_dict() for tag in self.tags],
            "priority": self.priority,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "contentHash": self.content_hash,
        }
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "Aku":
        return cls(
            id=str(payload["id"]),
            key=str(payload.get("key", "")),
            content=str(payload.get("content", "")),
            summary=str(payload.get("summary") or ""),
            tags=[TagWithWeight.from_dict(tag) for tag in payload.get("tags") or []],
            priority=int(payload.get("priority", DEFAULT_PRIORITY)),
            enabled=bool(payload.get("enabled", True)),
            created_at=int(payload.get("createdAt") or 0),
            updated_at=int(payload.get("updatedAt") or 0),
            content_hash=payload.get("contentHash"),
            error_message=payload.get("errorMessage"),
        )


@dataclass
class AkuIndexItem:
    """Lightweight per-AKU entry kept inside the collection metadata."""

    id: str
    key: str
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    updated_at: int = 0
    vector_status: str = VECTOR_STATUS_NONE
    content_hash: Optional[str] = None
    vectorized_models: List[str] = field(default_factory=list)
    total_tokens: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "key": self.key,
            "summary": self.summary,
            "tags": list(self.tags),
            "priority": self.priority,
            "updatedAt": self.updated_at,
            "vectorStatus": self.vector_status,
            "contentHash": self.content_hash,
            "vectorizedModels": list(self.vectorized_models),
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "AkuIndexItem":
        return cls(
            id=str(payload["id"]),
            key=str(payload.get("key", "")),
            summary=str(payload.get("summary") or ""),
            tags=[str(tag) for tag in payload.get("tags") or []],
            priority=int(payload.get("priority", DEFAULT_PRIORITY)),
            updated_at=int(payload.get("updatedAt") or 0),
            vector_status=str(payload.get("vectorStatus") or VECTOR_STATUS_NONE),
            content_hash=payload.get("contentHash"),
            vectorized_models=[str(model) for model in payload.get("vectorizedModels") or []],
            total_tokens=int(payload.get("totalTokens") or 0),
        )


@dataclass
class VectorizationMeta:
    """Vectorization bookkeeping for a collection."""

    is_indexed: bool = False
    last_indexed_at: Optional[int] = None
    model_used: str = ""
    dimension: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict:
        return {
            "isIndexed": self.is_indexed,
            "lastIndexedAt": self.last_indexed_at,
            "modelUsed": self.model_used,
            "dimension": self.dimension,
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Dict]) -> "VectorizationMeta":
        payload = payload or {}
        return cls(
            is_indexed=bool(payload.get("isIndexed", False)),
            last_indexed_at=payload.get("lastIndexedAt"),
            model_used=str(payload.get("modelUsed") or ""),
            dimension=int(payload.get("dimension") or 0),
            total_tokens=int(payload.get("totalTokens") or 0),
        )


@dataclass
class CollectionMeta:
    """Full persisted record of a collection, including its lightweight AKU index."""

    id: str
    name: str
    description: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    author: Optional[str] = None
    vectorization: VectorizationMeta = field(default_factory=VectorizationMeta)
    models: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    icon: Optional[str] = None
    entries: List[AkuIndexItem] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)

    def find_entry(self, aku_id: str) -> Optional[AkuIndexItem]:
        for entry in self.entries:
            if entry.id == aku_id:
                return entry
        return None

    def config_float(self, key: str) -> Optional[float]:
        """Read a numeric per-collection override, ignoring non-numeric values."""

        value = self.config.get(key) if isinstance(self.config, dict) else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def config_int(self, key: str) -> Optional[int]:
        value = self.config_float(key)
        return int(value) if value is not None else None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "author": self.author,
            "vectorization": self.vectorization.to_dict(),
            "models": list(self.models),
            "tags": list(self.tags),
            "icon": self.icon,
            "entries": [entry.to_dict() for entry in self.entries],
            "config": dict(self.config or {}),
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "CollectionMeta":
        config = payload.get("config")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            description=payload.get("description"),
            created_at=int(payload.get("createdAt") or 0),
            updated_at=int(payload.get("updatedAt") or 0),
            author=payload.get("author"),
            vectorization=VectorizationMeta.from_dict(payload.get("vectorization")),
            models=[str(model) for model in payload.get("models") or []],
            tags=[str(tag) for tag in payload.get("tags") or []],
            icon=payload.get("icon"),
            entries=[AkuIndexItem.from_dict(entry) for entry in payload.get("entries") or []],
            config=config if isinstance(config, dict) else {},
        )


@dataclass
class AkuPatch:
    """Partial update applied by batch patch operations; None leaves a field untouched."""

    enabled: Optional[bool] = None
    priority: Optional[int] = None
    key: Optional[str] = None
    tags: Optional[List[TagWithWeight]] = None

    def apply(self, aku: Aku) -> None:
        if self.enabled is not None:
            aku.enabled = self.enabled
        if self.priority is not None:
            aku.priority = self.priority
        if self.key is not None:
            aku.key = self.key
        if self.tags is not None:
            aku.tags = list(self.tags)
        aku.updated_at = now_ts()


@dataclass
class ImportConfig:
    """Options controlling metadata extraction during imports."""

    auto_extract_tags: bool = False
    auto_extract_title: bool = False
    default_tags: List[str] = field(default_factory=list)


@dataclass
class SearchFilters:
    """Query-time filters shared by every retrieval engine.

    Engine-specific knobs with no dedicated field travel in ``extra``; engines ignore keys they do
    not understand.
    """

    collection_ids: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    limit: Optional[int] = None
    min_score: Optional[float] = None
    enabled_only: Optional[bool] = True
    texture: Optional[str] = None
    refraction_index: Optional[float] = None
    required_tags: Optional[List[str]] = None
    history_vectors: Optional[List[List[float]]] = None
    k1: Optional[float] = None
    b: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = {
        "kbIds": "collection_ids",
        "collectionIds": "collection_ids",
        "tags": "tags",
        "limit": "limit",
        "minScore": "min_score",
        "enabledOnly": "enabled_only",
        "texture": "texture",
        "refractionIndex": "refraction_index",
        "requiredTags": "required_tags",
        "historyVectors": "history_vectors",
        "k1": "k1",
        "b": "b",
    }

    @property
    def only_enabled(self) -> bool:
        return self.enabled_only is not False

    @classmethod
    def from_dict(cls, payload: Optional[Dict]) -> "SearchFilters":
        """Build filters from camelCase JSON; unknown keys land in ``extra``."""

        filters = cls()
        for key, value in (payload or {}).items():
            attr = cls._KNOWN_KEYS.get(key)
            if attr is None:
                filters.extra[key] = value
            else:
                setattr(filters, attr, value)
        return filters


@dataclass
class TextPayload:
    """Raw text query."""

    text: str


@dataclass
class VectorPayload:
    """Precomputed query vector with the id of the model that produced it."""

    vector: List[float]
    model: str
    query: Optional[str] = None


QueryPayload = Union[TextPayload, VectorPayload]


@dataclass
class ScoredResult:
    """Single ranked hit returned by a retrieval engine."""

    aku: Aku
    score: float
    match_type: str
    collection_id: str
    collection_name: str
    highlight: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "aku": self.aku.to_dict(),
            "score": self.score,
            "matchType": self.match_type,
            "collectionId": self.collection_id,
            "collectionName": self.collection_name,
            "highlight": self.highlight,
        }


@dataclass
class EngineInfo:
    """Declarative description of a retrieval engine and its parameters."""

    id: str
    name: str
    description: str
    supported_payload_types: List[str]
    requires_embedding: bool = False
    icon: Optional[str] = None
    parameters: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "supportedPayloadTypes": list(self.supported_payload_types),
            "requiresEmbedding": self.requires_embedding,
            "parameters": list(self.parameters),
        }


@dataclass
class BatchImportResult:
    """Outcome of a batch upsert or file import."""

    entries: List[Aku] = field(default_factory=list)
    skipped_count: int = 0
    duplicate_count: int = 0


@dataclass
class LoadStats:
    """Summary of a model vector load into a collection matrix."""

    loaded_count: int
    dimension: int
    model_id: str


@dataclass
class VectorCoverage:
    """How many AKUs already carry a vector for a given model."""

    total: int = 0
    cached: int = 0
    missing: int = 0
    missing_map: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class LibraryStats:
    """Aggregate counters across every loaded collection."""

    total_entries: int = 0
    vectorized_entries: int = 0
    total_collections: int = 0
    discovered_tags: List[str] = field(default_factory=list)
    tag_usage: Dict[str, int] = field(default_factory=dict)
    collection_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)
