# Path: knowledge/indexing/text.py
# Purpose: Text helpers shared by indexing, import, and keyword scoring.
# Layer: knowledge/indexing.
# Details: Tokenization with jieba word segmentation, content hashing, summaries, metadata extraction, and highlights.

from __future__ import annotations

import hashlib
import re
from typing import List, Optional

import jieba

# jieba also yields whitespace and punctuation pieces; only pieces with a word character are kept.
WORD_RE = re.compile(r"\w")
TAG_LINE_RE = re.compile(r"^(?:tags?|标签)\s*[:：]\s*(.+)$", re.IGNORECASE | re.MULTILINE)
TAG_SPLIT_RE = re.compile(r"[,，;；]")
TITLE_RE = re.compile(r"^#+\s+(.+)$", re.MULTILINE)

MIN_TOKEN_LENGTH = 2
SUMMARY_LENGTH = 120
HIGHLIGHT_BEFORE = 30
HIGHLIGHT_AFTER = 60
HIGHLIGHT_FALLBACK = 100


def segment(text: str) -> List[str]:
    """Split text into lower-cased words with jieba's precise mode."""

    return [piece.strip() for piece in jieba.lcut(text.lower(), cut_all=False) if WORD_RE.search(piece)]


def tokenize(text: str) -> List[str]:
    """Return index tokens: lower-cased segments of at least two characters."""

    return [token for token in segment(text) if len(token) >= MIN_TOKEN_LENGTH]


def content_hash(content: str) -> str:
    """SHA-256 hex digest of the content; empty content hashes to an empty string."""

    if not content:
        return ""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def generate_summary(content: str) -> str:
    """Derive a plain-text summary: heading lines dropped, first 120 characters kept."""

    plain = " ".join(line for line in content.splitlines() if not line.strip().startswith("#"))
    if len(plain) > SUMMARY_LENGTH:
        return f"{plain[:SUMMARY_LENGTH].strip()}..."
    return plain.strip()


def extract_tags(content: str) -> List[str]:
    """Return tag names declared on the first ``Tags:`` line of the content."""

    match = TAG_LINE_RE.search(content)
    if not match:
        return []
    return [part.strip() for part in TAG_SPLIT_RE.split(match.group(1)) if part.strip()]


def extract_title(content: str) -> Optional[str]:
    """Return the text of the first markdown heading, if any."""

    match = TITLE_RE.search(content)
    return match.group(1).strip() if match else None


def extract_highlight(content: str, query: str) -> str:
    """Cut a snippet around the first case-insensitive occurrence of the query.

    Falls back to the opening characters of the content when the query does not occur verbatim.
    """

    needle = query.strip().lower()
    position = content.lower().find(needle) if needle else -1
    if position < 0:
        if len(content) > HIGHLIGHT_FALLBACK:
            return f"{content[:HIGHLIGHT_FALLBACK]}..."
        return content

    start = max(position - HIGHLIGHT_BEFORE, 0)
    end = min(position + len(needle) + HIGHLIGHT_AFTER, len(content))
    snippet = content[start:end]
    if start > 0:
        snippet = f"...{snippet}"
    if end < len(content):
        snippet = f"{snippet}..."
    return snippet


__all__ = [
    "content_hash",
    "extract_highlight",
    "extract_tags",
    "extract_title",
    "generate_summary",
    "segment",
    "tokenize",
]
