# Path: api/app.py
# Purpose: Expose a FastAPI application for knowledge collection and retrieval operations.
# Layer: api.
# Details: Thin JSON layer over KnowledgeManager; knowledge errors map onto HTTP status codes.

from __future__ import annotations

from typing import Any, Dict, List, Optional

from knowledge.errors import KnowledgeError, LockContentionError, NotFoundError
from knowledge.models.domain import Aku, SearchFilters
from knowledge.storage.manager import KnowledgeManager


def error_status(exc: KnowledgeError) -> int:
    """HTTP status code for a knowledge error."""

    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, LockContentionError):
        return 503
    return 400


def create_app(manager: Optional[KnowledgeManager] = None):  # type: ignore[override]
    """Create a FastAPI app instance bound to the provided knowledge manager."""

    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse

    app = FastAPI(title="Knowledge Retrieval API", version="0.1.0")

    @app.exception_handler(KnowledgeError)
    async def handle_knowledge_error(request: Request, exc: KnowledgeError):
        return JSONResponse(status_code=error_status(exc), content={"detail": str(exc)})

    def require_manager() -> KnowledgeManager:
        if manager is None:
            raise HTTPException(status_code=500, detail="Knowledge manager is not configured.")
        return manager

    @app.get("/health")
    def health() -> Dict[str, Any]:
        """Return a simple health status payload."""

        collections = len(manager.database) if manager is not None else 0
        return {"status": "ok", "collections": collections}

    @app.get("/engines")
    def engines() -> List[Dict[str, Any]]:
        return [info.to_dict() for info in require_manager().list_engines()]

    @app.get("/collections")
    def list_collections() -> List[Dict[str, Any]]:
        return [meta.to_dict() for meta in require_manager().list_collections()]

    @app.post("/collections")
    def create_collection(payload: Dict[str, Any]) -> Dict[str, Any]:
        name = payload.get("name")
        if not name:
            raise HTTPException(status_code=400, detail="Collection name is required.")
        meta = require_manager().create_collection(
            name=str(name),
            description=payload.get("description"),
            tags=payload.get("tags"),
            config=payload.get("config"),
            author=payload.get("author"),
            icon=payload.get("icon"),
        )
        return meta.to_dict()

    @app.get("/collections/{collection_id}")
    def get_collection(collection_id: str, model: Optional[str] = None) -> Dict[str, Any]:
        return require_manager().get_collection_meta(collection_id, model).to_dict()

    @app.delete("/collections/{collection_id}")
    def delete_collection(collection_id: str) -> Dict[str, Any]:
        require_manager().delete_collection(collection_id)
        return {"deleted": collection_id}

    @app.get("/collections/{collection_id}/akus")
    def list_akus(collection_id: str) -> Dict[str, Any]:
        return {"ids": require_manager().list_aku_ids(collection_id)}

    @app.post("/collections/{collection_id}/akus")
    def upsert_aku(collection_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace one AKU from its camelCase JSON form; a missing id creates a new AKU."""

        if "content" not in payload:
            raise HTTPException(status_code=400, detail="AKU content is required.")
        if payload.get("id"):
            aku = Aku.from_dict(payload)
        else:
            aku = Aku.create(
                key=str(payload.get("key", "")),
                content=str(payload["content"]),
                tags=payload.get("tags"),
                priority=int(payload.get("priority", 100)),
                enabled=bool(payload.get("enabled", True)),
            )
        return require_manager().upsert_aku(collection_id, aku).to_dict()

    @app.get("/collections/{collection_id}/akus/{aku_id}")
    def get_aku(collection_id: str, aku_id: str) -> Dict[str, Any]:
        return require_manager().get_aku(collection_id, aku_id).to_dict()

    @app.delete("/collections/{collection_id}/akus/{aku_id}")
    def delete_aku(collection_id: str, aku_id: str) -> Dict[str, Any]:
        return {"deleted": require_manager().delete_aku(collection_id, aku_id)}

    @app.put("/collections/{collection_id}/akus/{aku_id}/vector")
    def update_vector(collection_id: str, aku_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        vector = payload.get("vector")
        model = payload.get("model")
        if not isinstance(vector, list) or not model:
            raise HTTPException(status_code=400, detail="Both vector and model are required.")
        require_manager().update_aku_vector(collection_id, aku_id, vector, str(model), payload.get("tokens"))
        return {"updated": aku_id}

    @app.get("/stats")
    def stats(model: Optional[str] = None) -> Dict[str, Any]:
        library = require_manager().library_stats(model)
        return {
            "totalEntries": library.total_entries,
            "vectorizedEntries": library.vectorized_entries,
            "totalCollections": library.total_collections,
            "discoveredTags": library.discovered_tags,
            "tagUsage": library.tag_usage,
            "collectionStats": library.collection_stats,
        }

    @app.post("/search")
    def search(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run a query through the selected engine; a vector switches to a vector payload."""

        results = require_manager().search(
            query=str(payload.get("query") or ""),
            filters=SearchFilters.from_dict(payload.get("filters")),
            engine_id=payload.get("engine"),
            vector=payload.get("vector"),
            model=payload.get("model"),
        )
        return {"results": [result.to_dict() for result in results]}

    return app
