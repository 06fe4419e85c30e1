"""
Tests for tokenization and text helpers.
"""

import hashlib

from knowledge.indexing.text import (
    content_hash,
    extract_highlight,
    extract_tags,
    extract_title,
    generate_summary,
    segment,
    tokenize,
)


class TestTokenize:
    """Segmentation and index token rules."""

    def test_lowercases_and_splits_on_punctuation(self):
        assert tokenize("Rust, is FAST!") == ["rust", "is", "fast"]

    def test_drops_single_character_tokens(self):
        assert tokenize("a b cd") == ["cd"]
        assert segment("a b cd") == ["a", "b", "cd"]

    def test_cjk_text_is_segmented_into_words(self):
        assert tokenize("机器学习") == ["机器", "学习"]
        assert segment("机器学习, rust") == ["机器", "学习", "rust"]

    def test_mixed_latin_and_cjk(self):
        tokens = tokenize("hnsw索引")
        assert tokens == ["hnsw", "索引"]


class TestContentHash:
    def test_sha256_of_utf8(self):
        assert content_hash("Rust is fast") == hashlib.sha256(b"Rust is fast").hexdigest()

    def test_empty_content_hashes_to_empty_string(self):
        assert content_hash("") == ""


class TestSummary:
    """Summary derivation for AKUs without one."""

    def test_heading_lines_are_dropped(self):
        assert generate_summary("# Title\nBody line\nSecond") == "Body line Second"

    def test_long_content_is_truncated_with_marker(self):
        summary = generate_summary("x" * 300)
        assert summary.endswith("...")
        assert len(summary) == 123


class TestMetadataExtraction:
    def test_title_from_first_heading(self):
        assert extract_title("intro\n## Ownership\n# Later") == "Ownership"

    def test_no_heading_gives_none(self):
        assert extract_title("plain text") is None

    def test_tags_line_split_on_mixed_separators(self):
        content = "Body\nTags: rust, systems； memory;safety\n"
        assert extract_tags(content) == ["rust", "systems", "memory", "safety"]

    def test_cjk_tag_label(self):
        assert extract_tags("标签：语言，工具") == ["语言", "工具"]

    def test_missing_tags_line(self):
        assert extract_tags("nothing here") == []


class TestHighlight:
    """Snippets around the first occurrence of the query."""

    def test_short_content_match_has_no_markers(self):
        assert extract_highlight("Rust is fast", "rust") == "Rust is fast"

    def test_markers_on_both_sides(self):
        content = "a" * 50 + "needle" + "b" * 100
        snippet = extract_highlight(content, "NEEDLE")
        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "needle" in snippet
        assert len(snippet) == 3 + 30 + 6 + 60 + 3

    def test_fallback_to_opening_characters(self):
        content = "z" * 150
        assert extract_highlight(content, "absent") == "z" * 100 + "..."
