"""
Tests for the HTTP surface over the knowledge manager.
"""

import pytest
from fastapi.testclient import TestClient

from api import create_app, error_status
from helpers import MODEL, axis
from knowledge.errors import KnowledgeError, LockContentionError, NotFoundError


@pytest.fixture
def client(manager):
    return TestClient(create_app(manager))


def create(client, name="Docs"):
    response = client.post("/collections", json={"name": name, "config": {"minScore": 0.1}})
    assert response.status_code == 200
    return response.json()["id"]


class TestApi:
    """Round trips through the JSON routes."""

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "collections": 0}

    def test_collection_lifecycle(self, client):
        collection_id = create(client)
        listed = client.get("/collections").json()
        assert [meta["id"] for meta in listed] == [collection_id]
        assert client.get(f"/collections/{collection_id}").json()["config"] == {"minScore": 0.1}

        assert client.delete(f"/collections/{collection_id}").json() == {"deleted": collection_id}
        assert client.get(f"/collections/{collection_id}").status_code == 404

    def test_collection_requires_name(self, client):
        assert client.post("/collections", json={}).status_code == 400

    def test_aku_routes_and_keyword_search(self, client):
        collection_id = create(client)
        created = client.post(
            f"/collections/{collection_id}/akus",
            json={"key": "Rust", "content": "Rust is fast", "tags": ["lang"]},
        ).json()
        assert created["contentHash"]
        assert created["tags"][0]["name"] == "lang"
        assert client.get(f"/collections/{collection_id}/akus").json() == {"ids": [created["id"]]}
        assert client.get(f"/collections/{collection_id}/akus/{created['id']}").json()["key"] == "Rust"

        results = client.post("/search", json={"query": "rust"}).json()["results"]
        assert [result["aku"]["id"] for result in results] == [created["id"]]
        assert results[0]["matchType"] == "keyword"
        assert results[0]["collectionName"] == "Docs"

        assert client.delete(f"/collections/{collection_id}/akus/{created['id']}").json() == {"deleted": True}
        assert client.get(f"/collections/{collection_id}/akus/{created['id']}").status_code == 404
        assert client.delete(f"/collections/{collection_id}/akus/{created['id']}").status_code == 404

    def test_upsert_with_id_replaces(self, client):
        collection_id = create(client)
        created = client.post(f"/collections/{collection_id}/akus", json={"key": "A", "content": "first"}).json()
        created["content"] = "second"
        client.post(f"/collections/{collection_id}/akus", json=created)
        assert client.get(f"/collections/{collection_id}/akus/{created['id']}").json()["content"] == "second"
        assert len(client.get(f"/collections/{collection_id}/akus").json()["ids"]) == 1

    def test_create_with_weighted_tags(self, client):
        collection_id = create(client)
        created = client.post(
            f"/collections/{collection_id}/akus",
            json={"key": "Rust", "content": "Rust is fast", "tags": [{"name": "lang", "weight": 2.0}, "systems"]},
        )
        assert created.status_code == 200
        tags = created.json()["tags"]
        assert [(tag["name"], tag["weight"]) for tag in tags] == [("lang", 2.0), ("systems", 1.0)]

        results = client.post("/search", json={"query": "lang"}).json()["results"]
        assert [result["aku"]["id"] for result in results] == [created.json()["id"]]

    def test_upsert_requires_content(self, client):
        collection_id = create(client)
        assert client.post(f"/collections/{collection_id}/akus", json={"key": "A"}).status_code == 400

    def test_vector_search(self, client):
        collection_id = create(client)
        aku = client.post(f"/collections/{collection_id}/akus", json={"key": "A", "content": "body"}).json()
        response = client.put(
            f"/collections/{collection_id}/akus/{aku['id']}/vector",
            json={"vector": axis(0), "model": MODEL, "tokens": 4},
        )
        assert response.json() == {"updated": aku["id"]}

        results = client.post(
            "/search",
            json={"query": "", "engine": "vector", "vector": axis(0), "model": MODEL, "filters": {"limit": 5}},
        ).json()["results"]
        assert [result["aku"]["id"] for result in results] == [aku["id"]]

        stats = client.get("/stats", params={"model": MODEL}).json()
        assert stats["vectorizedEntries"] == 1
        assert stats["collectionStats"][collection_id] == {"total": 1, "vectorized": 1}

    def test_unknown_engine_is_not_found(self, client):
        assert client.post("/search", json={"query": "x", "engine": "nope"}).status_code == 404

    def test_engines(self, client):
        assert [engine["id"] for engine in client.get("/engines").json()] == ["keyword", "vector", "lens", "blender"]

    def test_missing_manager(self):
        client = TestClient(create_app())
        assert client.get("/health").json()["collections"] == 0
        assert client.get("/collections").status_code == 500


class TestErrorStatus:
    @pytest.mark.parametrize(
        "error, status",
        [
            (NotFoundError("x"), 404),
            (LockContentionError("x"), 503),
            (KnowledgeError("x"), 400),
        ],
    )
    def test_mapping(self, error, status):
        assert error_status(error) == status
