"""
Shared pytest fixtures for knowledge tests.

Every manager works on a temporary storage root; vectors are small deterministic numpy arrays so
scores can be reasoned about exactly.
"""

import pytest

from config import AppSettings
from helpers import make_aku
from knowledge.storage.manager import KnowledgeManager


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory with a short lock timeout."""
    return AppSettings(storage_root=tmp_path / "store", lock_timeout=5.0)


@pytest.fixture
def manager_factory(settings):
    """Build warmed-up managers over the same storage root (simulates restarts)."""

    def factory() -> KnowledgeManager:
        manager = KnowledgeManager(settings)
        manager.warmup(wait=True)
        return manager

    return factory


@pytest.fixture
def manager(manager_factory):
    return manager_factory()


@pytest.fixture
def collection_id(manager):
    return manager.create_collection("Languages", description="Programming languages").id


@pytest.fixture
def lang_akus(manager, collection_id):
    """The classic two-AKU collection: Rust and Go, both tagged "lang"."""
    rust = manager.upsert_aku(collection_id, make_aku("Rust", "Rust is fast", tags=["lang"]))
    go = manager.upsert_aku(collection_id, make_aku("Go", "Go is simple", tags=["lang"]))
    return rust, go
