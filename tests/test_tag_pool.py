"""
Tests for the per-model tag pool and its manager.
"""

import numpy as np
import pytest

from helpers import DIM, axis, mix
from knowledge.storage.layout import StorageLayout
from knowledge.vector_store.tag_pool import ModelTagPool, TagPoolManager


@pytest.fixture
def layout(tmp_path):
    layout = StorageLayout(tmp_path)
    layout.ensure()
    return layout


def filled_pool(model_id: str = "m") -> ModelTagPool:
    pool = ModelTagPool(model_id)
    pool.sync_vectors([("rust", axis(0)), ("go", axis(1)), ("python", axis(2))])
    return pool


class TestModelTagPool:
    """Registry consistency, index lifecycle, and neighbor search."""

    def test_registry_and_reverse_table_agree(self):
        pool = filled_pool()
        assert len(pool) == 3
        for name, idx in pool.registry.items():
            assert pool.id_to_name[idx] == name
            np.testing.assert_allclose(pool.get_vector(idx), pool.vector_for(name))
        assert pool.vectors.size == 3 * DIM

    def test_upsert_existing_name_overwrites_in_place(self):
        pool = filled_pool()
        applied = pool.sync_vectors([("go", axis(3)), ("zig", axis(4))])
        assert applied == 2
        assert pool.registry["go"] == 1
        assert pool.registry["zig"] == 3
        np.testing.assert_allclose(pool.vector_for("go"), axis(3))

    def test_wrong_dimension_is_skipped(self):
        pool = filled_pool()
        applied = pool.sync_vectors([("bad", [1.0, 0.0])])
        assert applied == 0
        assert "bad" not in pool.registry

    def test_sync_invalidates_index(self):
        pool = filled_pool()
        assert pool.rebuild_index()
        assert pool.index is not None
        pool.sync_vectors([("zig", axis(4))])
        assert pool.index is None
        assert pool.search_neighbors(axis(4), 1) == []

    def test_neighbor_search_self_identity(self):
        pool = filled_pool()
        query = mix((5, 1.0), (6, 0.3))
        pool.sync_vectors([("target", query)])
        pool.rebuild_index()

        neighbors = pool.search_neighbors(query, 1)
        assert len(neighbors) == 1
        idx, similarity = neighbors[0]
        assert pool.get_tag_name(idx) == "target"
        assert similarity == pytest.approx(1.0, abs=1e-4)

    def test_k_is_clamped_to_registry_size(self):
        pool = filled_pool()
        pool.rebuild_index()
        neighbors = pool.search_neighbors(axis(0), 50)
        assert len(neighbors) == 3
        assert pool.get_tag_name(neighbors[0][0]) == "rust"
        similarities = [sim for _, sim in neighbors]
        assert similarities == sorted(similarities, reverse=True)

    def test_empty_pool_has_no_index(self):
        pool = ModelTagPool("empty")
        assert not pool.rebuild_index()
        assert pool.search_neighbors(axis(0), 5) == []

    def test_missing_tags_in_input_order(self):
        pool = filled_pool()
        assert pool.get_missing_tags(["zig", "rust", "c"]) == ["zig", "c"]

    def test_save_and_load(self, tmp_path):
        pool = filled_pool("org/model:v1")
        pool.save(tmp_path / "pool")
        loaded = ModelTagPool.load(tmp_path / "pool", "org/model:v1")
        assert loaded.registry == pool.registry
        assert loaded.dimension == DIM
        np.testing.assert_allclose(loaded.matrix, pool.matrix)
        assert loaded.index is None

    def test_load_without_vector_blob_starts_empty(self, tmp_path):
        filled_pool().save(tmp_path / "pool")
        (tmp_path / "pool" / "vectors.bin").unlink()
        loaded = ModelTagPool.load(tmp_path / "pool", "m")
        assert len(loaded) == 0

        loaded.sync_vectors([("c", axis(2))])
        assert loaded.registry == {"c": 0}
        assert loaded.matrix.shape == (1, DIM)
        np.testing.assert_allclose(loaded.vector_for("c"), axis(2))

    def test_load_with_truncated_vector_blob_starts_empty(self, tmp_path):
        filled_pool().save(tmp_path / "pool")
        blob = tmp_path / "pool" / "vectors.bin"
        blob.write_bytes(blob.read_bytes()[:-4])
        loaded = ModelTagPool.load(tmp_path / "pool", "m")
        assert len(loaded) == 0
        assert loaded.dimension == 0

    def test_snapshot_is_isolated_from_later_syncs(self):
        pool = filled_pool()
        pool.rebuild_index()
        snapshot = pool.snapshot()
        pool.sync_vectors([("zig", axis(4))])
        assert len(snapshot) == 3
        assert snapshot.index is not None
        assert "zig" not in snapshot.registry

    def test_stats(self):
        stats = filled_pool().stats()
        assert stats == {"modelId": "m", "tagCount": 3, "dimension": DIM, "hasIndex": False}


class TestTagPoolManager:
    """Lazy loading, persistence, and cleanup across models."""

    def test_get_pool_is_cached(self, layout):
        manager = TagPoolManager(layout)
        assert manager.get_pool("m") is manager.get_pool("m")
        assert manager.loaded_models() == ["m"]

    def test_saved_pool_reloads_in_new_manager(self, layout):
        first = TagPoolManager(layout)
        first.get_pool("m").sync_vectors([("rust", axis(0))])
        first.save_pool("m")

        second = TagPoolManager(layout)
        assert second.list_models_on_disk() == ["m"]
        pool = second.get_pool("m")
        assert pool.registry == {"rust": 0}

    def test_indexed_snapshot_builds_index(self, layout):
        manager = TagPoolManager(layout)
        manager.get_pool("m").sync_vectors([("rust", axis(0)), ("go", axis(1))])
        snapshot = manager.get_indexed_snapshot("m")
        assert snapshot.index is not None
        assert manager.get_pool("m").index is not None

    def test_prewarm_indexes_pools_on_disk(self, layout):
        writer = TagPoolManager(layout)
        writer.get_pool("a").sync_vectors([("x", axis(0))])
        writer.get_pool("b").sync_vectors([("y", axis(1))])
        writer.flush_all()

        reader = TagPoolManager(layout)
        assert reader.prewarm() == 2
        assert reader.get_pool("a").index is not None

    def test_flush_all_builds_and_saves(self, layout):
        manager = TagPoolManager(layout)
        manager.get_pool("m").sync_vectors([("rust", axis(0))])
        assert manager.flush_all() == 1
        assert manager.get_pool("m").index is not None
        assert (layout.tag_pool_dir("m") / "registry.json").exists()

    def test_clear_pool_and_clear_others(self, layout):
        manager = TagPoolManager(layout)
        for model_id in ("keep", "drop-1", "drop-2"):
            manager.get_pool(model_id).sync_vectors([("t", axis(0))])
            manager.save_pool(model_id)

        assert manager.clear_other_pools("keep") == 2
        assert manager.list_models() == ["keep"]
        assert manager.clear_pool("keep")
        assert manager.list_models() == []
        assert not manager.clear_pool("keep")
