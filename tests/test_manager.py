"""
Tests for the KnowledgeManager facade: collections, AKU writes, batches, vectors, and tag pools.
"""

import pytest

from helpers import DIM, MODEL, axis, make_aku
from knowledge.errors import KnowledgeError, NotFoundError
from knowledge.indexing.text import content_hash
from knowledge.models.domain import VECTOR_STATUS_NONE, VECTOR_STATUS_READY, AkuPatch, ImportConfig, TagWithWeight
from knowledge.storage.layout import safe_model_id

OTHER_MODEL = "other-embed-v2"


def index_item(manager, collection_id, aku_id):
    return manager.get_collection_meta(collection_id).find_entry(aku_id)


class TestCollections:
    """Collection lifecycle and metadata edits."""

    def test_create_and_list(self, manager):
        first = manager.create_collection("First", tags=["a"], config={"minScore": 0.3})
        manager.create_collection("Second")
        names = {meta.name for meta in manager.list_collections()}
        assert names == {"First", "Second"}
        assert manager.get_collection_meta(first.id).config == {"minScore": 0.3}

    def test_metadata_survives_restart(self, manager, manager_factory):
        meta = manager.create_collection("Docs")
        manager.update_collection_meta(meta.id, name="Renamed", config={"searchTopK": 5, "custom": "kept"})

        restarted = manager_factory()
        loaded = restarted.get_collection_meta(meta.id)
        assert loaded.name == "Renamed"
        assert loaded.config == {"searchTopK": 5, "custom": "kept"}

    def test_unknown_field_is_rejected(self, manager, collection_id):
        with pytest.raises(KnowledgeError):
            manager.update_collection_meta(collection_id, vectorization=None)

    def test_delete_collection(self, manager, collection_id, lang_akus):
        manager.update_aku_vector(collection_id, lang_akus[0].id, axis(0), MODEL)
        manager.delete_collection(collection_id)

        with pytest.raises(NotFoundError):
            manager.get_collection_meta(collection_id)
        assert not manager.layout.collection_dir(collection_id).exists()
        assert not manager.layout.vectors_dir(collection_id).exists()
        with pytest.raises(NotFoundError):
            manager.delete_collection(collection_id)

    def test_snapshot_is_detached(self, manager, collection_id):
        snapshot = manager.get_collection_meta(collection_id)
        snapshot.name = "mutated"
        assert manager.get_collection_meta(collection_id).name == "Languages"


class TestAkuWrites:
    """Single upserts, hashing, and derived fields."""

    def test_upsert_derives_hash_and_summary(self, manager, collection_id):
        aku = manager.upsert_aku(collection_id, make_aku("Notes", "# Heading\nbody text"))
        assert aku.content_hash == content_hash("# Heading\nbody text")
        assert aku.summary == "body text"
        assert manager.get_aku(collection_id, aku.id).content == "# Heading\nbody text"

    def test_upsert_is_idempotent(self, manager, collection_id):
        aku = manager.upsert_aku(collection_id, make_aku("Rust", "Rust is fast"))
        manager.update_aku_vector(collection_id, aku.id, axis(0), MODEL)

        manager.upsert_aku(collection_id, aku)
        item = index_item(manager, collection_id, aku.id)
        assert item.vector_status == VECTOR_STATUS_READY
        assert item.vectorized_models == [MODEL]
        assert manager.layout.has_vector(collection_id, MODEL, aku.id)
        assert manager.list_aku_ids(collection_id) == [aku.id]

    def test_changed_content_invalidates_vectors(self, manager, collection_id):
        aku = manager.upsert_aku(collection_id, make_aku("Rust", "Rust is fast"))
        manager.update_aku_vector(collection_id, aku.id, axis(0), MODEL)
        manager.update_aku_vector(collection_id, aku.id, axis(1), OTHER_MODEL)

        aku.content = "Rust is fast and safe"
        manager.upsert_aku(collection_id, aku)

        item = index_item(manager, collection_id, aku.id)
        assert item.vector_status == VECTOR_STATUS_NONE
        assert item.vectorized_models == []
        assert not manager.layout.has_vector(collection_id, MODEL, aku.id)
        assert not manager.layout.has_vector(collection_id, OTHER_MODEL, aku.id)
        assert aku.id not in manager.database.get(collection_id).vector_store

    def test_get_unknown_aku(self, manager, collection_id):
        with pytest.raises(NotFoundError):
            manager.get_aku(collection_id, "missing")

    def test_get_akus_across_collections(self, manager, collection_id, lang_akus):
        other = manager.create_collection("Other").id
        extra = manager.upsert_aku(other, make_aku("Zig", "Zig is small"))
        found = manager.get_akus([extra.id, "missing", lang_akus[0].id])
        assert [aku.id for aku in found] == [extra.id, lang_akus[0].id]

    def test_import_config_extracts_title_and_tags(self, manager, collection_id):
        config = ImportConfig(auto_extract_tags=True, auto_extract_title=True, default_tags=["imported"])
        aku = manager.upsert_aku(
            collection_id,
            make_aku("file-stem", "# Ownership\nTags: rust, memory\nBorrowing rules"),
            import_config=config,
        )
        assert aku.key == "Ownership"
        assert aku.tag_names() == ["rust", "memory", "imported"]
        assert aku.tags[0] == TagWithWeight(name="rust", weight=1.0, hash=content_hash("rust"))

    def test_existing_tags_are_not_replaced_by_extraction(self, manager, collection_id):
        config = ImportConfig(auto_extract_tags=True)
        aku = manager.upsert_aku(collection_id, make_aku("k", "Tags: a, b", tags=["given"]), import_config=config)
        assert aku.tag_names() == ["given"]


class TestBatchOperations:
    """Batch upsert, import, patch, and delete."""

    def test_batch_upsert_deduplicates(self, manager, collection_id, lang_akus):
        batch = [
            make_aku("Copy", "Rust is fast"),
            make_aku("New", "A fresh entry"),
            make_aku("New again", "A fresh entry"),
        ]
        result = manager.batch_upsert(collection_id, batch, deduplicate=True)
        assert [aku.key for aku in result.entries] == ["New"]
        assert result.duplicate_count == 2
        assert result.skipped_count == 0
        assert len(manager.list_aku_ids(collection_id)) == 3

    def test_batch_upsert_without_dedup_writes_everything(self, manager, collection_id):
        batch = [make_aku(f"k{i}", "same body") for i in range(4)]
        result = manager.batch_upsert(collection_id, batch)
        assert len(result.entries) == 4
        assert result.duplicate_count == 0
        assert len(manager.list_aku_ids(collection_id)) == 4

    def test_batch_upsert_persists(self, manager, manager_factory, collection_id):
        result = manager.batch_upsert(collection_id, [make_aku("a", "alpha"), make_aku("b", "beta")])
        restarted = manager_factory()
        assert sorted(restarted.list_aku_ids(collection_id)) == sorted(aku.id for aku in result.entries)

    def test_import_files(self, manager, collection_id, tmp_path):
        source = tmp_path / "docs"
        source.mkdir()
        (source / "intro.md").write_text("# Intro\nhello world", encoding="utf-8")
        (source / "notes.txt").write_text("plain notes", encoding="utf-8")
        (source / "blob.bin").write_bytes(b"\xff\xfe\x00\x81binary")
        paths = [source / "intro.md", source / "notes.txt", source / "blob.bin", source / "missing.md"]

        result = manager.import_files(collection_id, paths)
        assert sorted(aku.key for aku in result.entries) == ["intro", "notes"]
        assert result.skipped_count == 2

    def test_import_files_with_title_extraction(self, manager, collection_id, tmp_path):
        path = tmp_path / "page.md"
        path.write_text("# Real Title\nbody", encoding="utf-8")
        result = manager.import_files(collection_id, [path], import_config=ImportConfig(auto_extract_title=True))
        assert result.entries[0].key == "Real Title"

    def test_batch_patch(self, manager, manager_factory, collection_id, lang_akus):
        rust, go = lang_akus
        patched = manager.batch_patch(collection_id, [rust.id, go.id, "missing"], AkuPatch(enabled=False, priority=500))
        assert patched == 2
        assert manager.get_aku(collection_id, rust.id).enabled is False
        assert index_item(manager, collection_id, go.id).priority == 500

        restarted = manager_factory()
        assert restarted.get_aku(collection_id, go.id).priority == 500

    def test_batch_patch_tags_and_key(self, manager, collection_id, lang_akus):
        rust, _ = lang_akus
        manager.batch_patch(collection_id, [rust.id], AkuPatch(key="Rust lang", tags=[TagWithWeight("systems")]))
        item = index_item(manager, collection_id, rust.id)
        assert item.key == "Rust lang"
        assert item.tags == ["systems"]
        collection = manager.database.get(collection_id)
        assert collection.key_to_id["Rust lang"] == rust.id
        assert "Rust" not in collection.key_to_id

    def test_batch_delete(self, manager, manager_factory, collection_id, lang_akus):
        rust, go = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)

        removed = manager.batch_delete(collection_id, [rust.id, go.id, "missing"])
        assert removed == 2
        collection = manager.database.get(collection_id)
        assert not collection.contains_anywhere(rust.id)
        assert not collection.contains_anywhere(go.id)
        assert not manager.layout.entry_path(collection_id, rust.id).exists()
        assert not manager.layout.has_vector(collection_id, MODEL, rust.id)

        assert manager_factory().list_aku_ids(collection_id) == []

    def test_delete_aku(self, manager, collection_id, lang_akus):
        assert manager.delete_aku(collection_id, lang_akus[0].id)
        with pytest.raises(NotFoundError):
            manager.delete_aku(collection_id, lang_akus[0].id)


class TestVectors:
    """Vector ingestion, model switching, coverage, and cleanup."""

    def test_update_aku_vector(self, manager, collection_id, lang_akus):
        rust, go = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL, tokens=12)
        manager.update_aku_vector(collection_id, go.id, axis(1), MODEL, tokens=8)

        meta = manager.get_collection_meta(collection_id)
        assert meta.models == [MODEL]
        assert meta.vectorization.model_used == MODEL
        assert meta.vectorization.dimension == DIM
        assert meta.vectorization.total_tokens == 20
        assert all(item.vector_status == VECTOR_STATUS_READY for item in meta.entries)
        assert manager.layout.read_models_index(collection_id)
        assert len(manager.database.get(collection_id).vector_store) == 2

    def test_vector_for_inactive_model_is_persisted_only(self, manager, collection_id, lang_akus):
        rust, _ = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)
        manager.update_aku_vector(collection_id, rust.id, axis(1, dim=4), OTHER_MODEL)

        store = manager.database.get(collection_id).vector_store
        assert store.model_id == MODEL
        assert store.dimension == DIM
        assert manager.layout.has_vector(collection_id, OTHER_MODEL, rust.id)
        assert set(manager.get_collection_meta(collection_id).models) == {MODEL, OTHER_MODEL}

    def test_bulk_update_vectors(self, manager, collection_id, lang_akus):
        rust, go = lang_akus
        written = manager.bulk_update_vectors(collection_id, MODEL, [(rust.id, axis(0), 3), (go.id, axis(1), None)])
        assert written == 2
        assert manager.get_collection_meta(collection_id).vectorization.total_tokens == 3
        assert len(manager.database.get(collection_id).vector_store) == 2

    def test_load_model_vectors_switches_active_model(self, manager, collection_id, lang_akus):
        rust, go = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)
        manager.update_aku_vector(collection_id, go.id, axis(1), MODEL)
        manager.update_aku_vector(collection_id, rust.id, axis(2, dim=4), OTHER_MODEL)

        stats = manager.load_model_vectors(collection_id, OTHER_MODEL)
        assert (stats.loaded_count, stats.dimension, stats.model_id) == (1, 4, OTHER_MODEL)
        store = manager.database.get(collection_id).vector_store
        assert store.model_id == OTHER_MODEL
        assert manager.get_collection_meta(collection_id).vectorization.model_used == OTHER_MODEL

        again = manager.load_model_vectors(collection_id, OTHER_MODEL)
        assert again.loaded_count == 1

    def test_collection_meta_for_model(self, manager, collection_id, lang_akus):
        rust, go = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)
        manager.update_aku_vector(collection_id, go.id, axis(1), OTHER_MODEL)

        meta = manager.get_collection_meta(collection_id, model_id=OTHER_MODEL)
        statuses = {item.id: item.vector_status for item in meta.entries}
        assert statuses == {rust.id: VECTOR_STATUS_NONE, go.id: VECTOR_STATUS_READY}

    def test_collection_meta_for_model_without_file(self, manager, collection_id, lang_akus):
        rust, _ = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), OTHER_MODEL)
        assert OTHER_MODEL in index_item(manager, collection_id, rust.id).vectorized_models
        manager.layout.vector_path(collection_id, OTHER_MODEL, rust.id).unlink()

        item = manager.get_collection_meta(collection_id, model_id=OTHER_MODEL).find_entry(rust.id)
        assert item.vector_status == VECTOR_STATUS_NONE
        assert OTHER_MODEL not in item.vectorized_models

    def test_check_vector_coverage(self, manager, collection_id, lang_akus):
        rust, go = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)
        coverage = manager.check_vector_coverage(None, MODEL)
        assert (coverage.total, coverage.cached, coverage.missing) == (2, 1, 1)
        assert coverage.missing_map == {collection_id: [go.id]}

    def test_clear_legacy_vectors(self, manager, collection_id, lang_akus):
        rust, go = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)
        manager.update_aku_vector(collection_id, rust.id, axis(1), OTHER_MODEL)
        manager.update_aku_vector(collection_id, go.id, axis(1), OTHER_MODEL)

        deleted = manager.clear_legacy_vectors(collection_id, MODEL)
        assert deleted == 2
        meta = manager.get_collection_meta(collection_id)
        assert meta.models == [MODEL]
        statuses = {item.id: (item.vector_status, item.vectorized_models) for item in meta.entries}
        assert statuses[rust.id] == (VECTOR_STATUS_READY, [MODEL])
        assert statuses[go.id] == (VECTOR_STATUS_NONE, [])
        assert manager.layout.read_models_index(collection_id) == {safe_model_id(MODEL): MODEL}

    def test_clear_all_other_vectors(self, manager, collection_id, lang_akus):
        other = manager.create_collection("Other").id
        extra = manager.upsert_aku(other, make_aku("Zig", "Zig is small"))
        manager.update_aku_vector(collection_id, lang_akus[0].id, axis(0), OTHER_MODEL)
        manager.update_aku_vector(other, extra.id, axis(0), OTHER_MODEL)
        manager.update_aku_vector(other, extra.id, axis(0), MODEL)

        assert manager.clear_all_other_vectors(MODEL) == 2
        assert manager.check_vector_coverage(None, OTHER_MODEL).cached == 0
        assert manager.check_vector_coverage([other], MODEL).cached == 1


class TestTagPoolOperations:
    """Tag pool maintenance through the manager."""

    def test_sync_and_missing_tags(self, manager):
        assert manager.sync_tag_vectors(MODEL, [("rust", axis(0)), ("go", axis(1))]) == 2
        assert manager.get_missing_tags(MODEL, ["rust", "zig"]) == ["zig"]
        assert manager.rebuild_tag_pool_index(MODEL)

    def test_pool_persists_and_reports_size(self, manager, manager_factory):
        manager.sync_tag_vectors(MODEL, [("rust", axis(0)), ("go", axis(1))])
        restarted = manager_factory()
        assert restarted.list_tag_pool_models() == [MODEL]
        stats = restarted.tag_pool_stats(MODEL)
        assert stats["tagCount"] == 2
        assert stats["dimension"] == DIM
        assert stats["poolSizeBytes"] == 2 * DIM * 4
        # Warmup prewarms every pool found on disk.
        assert stats["hasIndex"] is True

    def test_clear_pools(self, manager):
        manager.sync_tag_vectors(MODEL, [("rust", axis(0))])
        manager.sync_tag_vectors(OTHER_MODEL, [("rust", axis(0))])
        assert manager.clear_other_tag_pools(MODEL) == 1
        assert manager.list_tag_pool_models() == [MODEL]
        assert manager.clear_tag_pool(MODEL)
        assert manager.list_tag_pool_models() == []

    def test_flush_all(self, manager):
        manager.get_missing_tags(MODEL, [])
        manager.tag_pools.get_pool(MODEL).sync_vectors([("rust", axis(0))])
        assert manager.flush_all_tag_pools() == 1
        assert manager.tag_pool_stats(MODEL)["poolSizeBytes"] == DIM * 4

    def test_list_all_tags(self, manager, collection_id, lang_akus):
        manager.update_collection_meta(collection_id, tags=["programming"])
        manager.upsert_aku(collection_id, make_aku("Zig", "Zig is small", tags=["systems"]))
        assert manager.list_all_tags() == ["lang", "programming", "systems"]


class TestStatisticsAndCache:
    def test_library_stats(self, manager, collection_id, lang_akus):
        rust, _ = lang_akus
        manager.update_aku_vector(collection_id, rust.id, axis(0), MODEL)

        stats = manager.library_stats()
        assert stats.total_collections == 1
        assert stats.total_entries == 2
        assert stats.vectorized_entries == 1
        assert stats.discovered_tags == ["lang"]
        assert stats.tag_usage == {"lang": 2}
        assert stats.collection_stats == {collection_id: {"total": 2, "vectorized": 1}}

        assert manager.library_stats(MODEL).vectorized_entries == 1
        assert manager.library_stats(OTHER_MODEL).vectorized_entries == 0

    def test_embedding_cache(self, manager):
        assert manager.get_cached_embedding(MODEL, "query") is None
        manager.set_cached_embedding(MODEL, "query", [0.1, 0.2])
        assert manager.get_cached_embedding(MODEL, "query") == pytest.approx([0.1, 0.2])
        manager.clear_embedding_cache()
        assert manager.get_cached_embedding(MODEL, "query") is None
