# Path: knowledge/indexing/inverted_index.py
# Purpose: Per-collection term and tag inverted index backing keyword scoring.
# Layer: knowledge/indexing.
# Details: Posting lists store (aku id, term frequency); tag postings add a fixed bonus on exact match.

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Set, Tuple

from knowledge.models.domain import Aku
from .text import tokenize

TAG_MATCH_BONUS = 5.0


class TextInvertedIndex:
    """Token and tag posting lists for a single collection."""

    def __init__(self) -> None:
        self.token_postings: Dict[str, List[Tuple[str, int]]] = {}
        self.tag_postings: Dict[str, List[str]] = {}
        # Reverse map so re-indexing an AKU replaces its previous postings.
        self._terms_by_id: Dict[str, Tuple[Set[str], Set[str]]] = {}

    def __len__(self) -> int:
        return len(self._terms_by_id)

    def __contains__(self, aku_id: str) -> bool:
        return aku_id in self._terms_by_id

    def index_aku(self, aku: Aku) -> None:
        """Tokenize the AKU content and append its postings; tags go to the tag list."""

        if aku.id in self._terms_by_id:
            self.remove_aku(aku.id)

        frequencies = Counter(tokenize(aku.content))
        for token, count in frequencies.items():
            self.token_postings.setdefault(token, []).append((aku.id, count))

        tag_keys: Set[str] = set()
        for tag in aku.tags:
            name = tag.name.strip().lower()
            if not name or name in tag_keys:
                continue
            tag_keys.add(name)
            self.tag_postings.setdefault(name, []).append(aku.id)

        self._terms_by_id[aku.id] = (set(frequencies), tag_keys)

    def remove_aku(self, aku_id: str) -> None:
        """Strip the id from every posting list it appears in."""

        tokens, tags = self._terms_by_id.pop(aku_id, (None, None))
        if tokens is None:
            # Unknown to the reverse map: fall back to a full scan.
            tokens, tags = set(self.token_postings), set(self.tag_postings)

        for token in tokens:
            postings = self.token_postings.get(token)
            if postings is None:
                continue
            postings[:] = [posting for posting in postings if posting[0] != aku_id]
            if not postings:
                del self.token_postings[token]
        for tag in tags:
            postings = self.tag_postings.get(tag)
            if postings is None:
                continue
            postings[:] = [posting for posting in postings if posting != aku_id]
            if not postings:
                del self.tag_postings[tag]

    def search(self, query: str) -> List[Tuple[str, float]]:
        """Score AKUs for a raw query and return (id, score) pairs, best first."""

        scores: Dict[str, float] = {}
        tag_key = query.strip().lower()
        for aku_id in self.tag_postings.get(tag_key, []):
            scores[aku_id] = scores.get(aku_id, 0.0) + TAG_MATCH_BONUS

        for token in tokenize(query):
            for aku_id, frequency in self.token_postings.get(token, []):
                scores[aku_id] = scores.get(aku_id, 0.0) + float(frequency)

        return sorted(scores.items(), key=lambda item: item[1], reverse=True)

    def contains_id(self, aku_id: str) -> bool:
        """Return whether any posting list still references the id."""

        if any(aku_id == posting[0] for postings in self.token_postings.values() for posting in postings):
            return True
        return any(aku_id in postings for postings in self.tag_postings.values())

    def clear(self) -> None:
        self.token_postings.clear()
        self.tag_postings.clear()
        self._terms_by_id.clear()


__all__ = ["TAG_MATCH_BONUS", "TextInvertedIndex"]
