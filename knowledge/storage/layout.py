# Path: knowledge/storage/layout.py
# Purpose: Persistence contract for collection metadata, AKU records, per-model vectors, and tag pools.
# Layer: knowledge/storage.
# Details: Every record is one JSON file under <root>/knowledge/; writes are plain, non-atomic file writes.

from __future__ import annotations

import hashlib
import json
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from knowledge.errors import MalformedDataError, NotFoundError, StorageError
from knowledge.models.domain import Aku, CollectionMeta, now_ts

logger = logging.getLogger(__name__)

SAFE_PREFIX_LENGTH = 20
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9]")

META_FILE = "meta.json"
ENTRIES_DIR = "entries"
MODELS_INDEX_FILE = "models.json"
VECTOR_SUFFIX = ".vec"


def safe_model_id(model_id: str) -> str:
    """Filesystem-safe directory name for a model id: readable prefix plus a collision-proof digest."""

    prefix = _UNSAFE_CHARS_RE.sub("_", model_id[:SAFE_PREFIX_LENGTH])
    digest = hashlib.blake2b(model_id.encode("utf-8"), digest_size=8).hexdigest()
    return f"{prefix}_{digest}"


@dataclass
class VectorRecord:
    """One persisted vector for a (collection, model, AKU) triple."""

    aku_id: str
    vector: List[float]
    model: str
    timestamp: int = 0
    tokens: Optional[int] = None

    def to_dict(self) -> Dict:
        payload = {"akuId": self.aku_id, "vector": self.vector, "model": self.model, "timestamp": self.timestamp}
        if self.tokens is not None:
            payload["tokens"] = self.tokens
        return payload

    @classmethod
    def from_dict(cls, payload: Dict) -> "VectorRecord":
        tokens = payload.get("tokens")
        return cls(
            aku_id=str(payload["akuId"]),
            vector=[float(value) for value in payload["vector"]],
            model=str(payload.get("model", "")),
            timestamp=int(payload.get("timestamp") or 0),
            tokens=int(tokens) if tokens is not None else None,
        )


def read_json(path: Path) -> Dict:
    """Load a JSON object from disk, raising MalformedDataError on unparsable content."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedDataError(path, str(exc)) from exc
    except UnicodeDecodeError as exc:
        raise MalformedDataError(path, "not valid UTF-8") from exc
    if not isinstance(payload, dict):
        raise MalformedDataError(path, "expected a JSON object")
    return payload


def write_json(path: Path, payload: object) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"Failed to write {path}: {exc}") from exc


class StorageLayout:
    """Addressable persisted units for one storage root.

    Layout under ``<root>/knowledge``:
    - ``bases/<collection>/meta.json`` and ``bases/<collection>/entries/<aku>.json``
    - ``vectors/<collection>/models.json`` and ``vectors/<collection>/<safe model>/<aku>.vec``
    - ``tag_pool/<safe model>/{registry.json,vectors.bin,model.json}``
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.knowledge_dir = self.root / "knowledge"
        self.bases_dir = self.knowledge_dir / "bases"
        self.vectors_root = self.knowledge_dir / "vectors"
        self.tag_pool_root = self.knowledge_dir / "tag_pool"

    def ensure(self) -> None:
        for directory in (self.bases_dir, self.vectors_root, self.tag_pool_root):
            directory.mkdir(parents=True, exist_ok=True)

    # Paths
    def collection_dir(self, collection_id: str) -> Path:
        return self.bases_dir / collection_id

    def meta_path(self, collection_id: str) -> Path:
        return self.collection_dir(collection_id) / META_FILE

    def entries_dir(self, collection_id: str) -> Path:
        return self.collection_dir(collection_id) / ENTRIES_DIR

    def entry_path(self, collection_id: str, aku_id: str) -> Path:
        return self.entries_dir(collection_id) / f"{aku_id}.json"

    def vectors_dir(self, collection_id: str) -> Path:
        return self.vectors_root / collection_id

    def model_vectors_dir(self, collection_id: str, model_id: str) -> Path:
        return self.vectors_dir(collection_id) / safe_model_id(model_id)

    def vector_path(self, collection_id: str, model_id: str, aku_id: str) -> Path:
        return self.model_vectors_dir(collection_id, model_id) / f"{aku_id}{VECTOR_SUFFIX}"

    def models_index_path(self, collection_id: str) -> Path:
        return self.vectors_dir(collection_id) / MODELS_INDEX_FILE

    def tag_pool_dir(self, model_id: str) -> Path:
        return self.tag_pool_root / safe_model_id(model_id)

    # Collection metadata
    def list_collection_ids(self) -> List[str]:
        """Return ids of every collection directory holding a metadata file."""

        if not self.bases_dir.exists():
            return []
        return sorted(entry.name for entry in self.bases_dir.iterdir() if entry.is_dir() and (entry / META_FILE).exists())

    def read_meta(self, collection_id: str) -> CollectionMeta:
        path = self.meta_path(collection_id)
        if not path.exists():
            raise NotFoundError(f"Collection {collection_id} not found")
        payload = read_json(path)
        try:
            return CollectionMeta.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedDataError(path, str(exc)) from exc

    def write_meta(self, meta: CollectionMeta) -> None:
        write_json(self.meta_path(meta.id), meta.to_dict())
        logger.debug("Saved metadata for collection %s (%d entries)", meta.id, len(meta.entries))

    def delete_collection(self, collection_id: str) -> None:
        """Remove the collection directory and every vector stored for it."""

        for directory in (self.collection_dir(collection_id), self.vectors_dir(collection_id)):
            if directory.exists():
                shutil.rmtree(directory)

    # AKU records
    def list_entry_files(self, collection_id: str) -> List[Path]:
        directory = self.entries_dir(collection_id)
        if not directory.exists():
            return []
        return sorted(directory.glob("*.json"))

    @staticmethod
    def read_entry_file(path: Path) -> Aku:
        payload = read_json(path)
        try:
            return Aku.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedDataError(path, str(exc)) from exc

    def read_entry(self, collection_id: str, aku_id: str) -> Aku:
        path = self.entry_path(collection_id, aku_id)
        if not path.exists():
            raise NotFoundError(f"AKU {aku_id} not found in collection {collection_id}")
        return self.read_entry_file(path)

    def write_entry(self, collection_id: str, aku: Aku) -> None:
        write_json(self.entry_path(collection_id, aku.id), aku.to_dict())

    def delete_entry(self, collection_id: str, aku_id: str) -> bool:
        path = self.entry_path(collection_id, aku_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    # Vector records
    def read_models_index(self, collection_id: str) -> Dict[str, str]:
        """Safe model id to original model id for a collection; unreadable indexes count as empty."""

        path = self.models_index_path(collection_id)
        if not path.exists():
            return {}
        try:
            payload = read_json(path)
        except MalformedDataError as exc:
            logger.warning("%s", exc)
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def write_models_index(self, collection_id: str, mapping: Dict[str, str]) -> None:
        write_json(self.models_index_path(collection_id), mapping)

    def register_model(self, collection_id: str, model_id: str) -> None:
        mapping = self.read_models_index(collection_id)
        safe_id = safe_model_id(model_id)
        if mapping.get(safe_id) != model_id:
            mapping[safe_id] = model_id
            self.write_models_index(collection_id, mapping)

    def write_vector(
        self,
        collection_id: str,
        model_id: str,
        aku_id: str,
        vector: List[float],
        tokens: Optional[int] = None,
    ) -> Path:
        record = VectorRecord(aku_id=aku_id, vector=[float(v) for v in vector], model=model_id, timestamp=now_ts(), tokens=tokens)
        path = self.vector_path(collection_id, model_id, aku_id)
        write_json(path, record.to_dict())
        return path

    @staticmethod
    def read_vector_file(path: Path) -> VectorRecord:
        payload = read_json(path)
        try:
            return VectorRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedDataError(path, str(exc)) from exc

    def list_vector_files(self, collection_id: str, model_id: str) -> List[Path]:
        directory = self.model_vectors_dir(collection_id, model_id)
        if not directory.exists():
            return []
        return sorted(directory.glob(f"*{VECTOR_SUFFIX}"))

    def has_vector(self, collection_id: str, model_id: str, aku_id: str) -> bool:
        return self.vector_path(collection_id, model_id, aku_id).exists()

    def delete_vectors_for_aku(self, collection_id: str, aku_id: str) -> int:
        """Delete the vector file of an AKU under every model directory; returns files removed."""

        directory = self.vectors_dir(collection_id)
        if not directory.exists():
            return 0
        removed = 0
        for model_dir in directory.iterdir():
            path = model_dir / f"{aku_id}{VECTOR_SUFFIX}"
            if model_dir.is_dir() and path.exists():
                path.unlink()
                removed += 1
        return removed

    def list_model_dirs(self, collection_id: str) -> List[Path]:
        directory = self.vectors_dir(collection_id)
        if not directory.exists():
            return []
        return sorted(entry for entry in directory.iterdir() if entry.is_dir())

    def delete_model_dirs_except(self, collection_id: str, keep_model_id: str) -> int:
        """Remove every model vector directory except the kept model; returns files deleted."""

        keep_safe = safe_model_id(keep_model_id)
        mapping = self.read_models_index(collection_id)
        deleted = 0
        changed = False
        for model_dir in self.list_model_dirs(collection_id):
            original = mapping.get(model_dir.name)
            is_kept = original == keep_model_id if original is not None else model_dir.name == keep_safe
            if is_kept:
                continue
            deleted += sum(1 for path in model_dir.iterdir() if path.is_file())
            shutil.rmtree(model_dir)
            changed = mapping.pop(model_dir.name, None) is not None or changed

        if changed:
            self.write_models_index(collection_id, mapping)
        return deleted


__all__ = ["StorageLayout", "VectorRecord", "read_json", "safe_model_id", "write_json"]
