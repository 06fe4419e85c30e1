# Path: knowledge/indexing/__init__.py
# Purpose: Package initializer for text indexing utilities.
# Layer: knowledge/indexing.
# Details: Exposes the tokenizer helpers and the per-collection inverted index.

from .inverted_index import TextInvertedIndex
from .text import content_hash, extract_highlight, extract_tags, extract_title, generate_summary, tokenize

__all__ = [
    "TextInvertedIndex",
    "content_hash",
    "extract_highlight",
    "extract_tags",
    "extract_title",
    "generate_summary",
    "tokenize",
]
