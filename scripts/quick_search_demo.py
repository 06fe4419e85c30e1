# Path: scripts/quick_search_demo.py
# Purpose: Simple CLI to run a search query against the stored collections.
# Layer: scripts.
# Details: Loads every collection through warmup, then dispatches the query to one retrieval engine.

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import AppSettings
from knowledge.logging_config import configure_logging
from knowledge.models.domain import SearchFilters
from knowledge.storage.manager import KnowledgeManager


def main() -> None:
    """Execute a quick search from the command line."""

    parser = argparse.ArgumentParser(description="Run a quick search against the knowledge store")
    parser.add_argument("--text", type=str, default="", help="Text query to search for")
    parser.add_argument("--engine", type=str, help="Retrieval engine id (keyword, vector, lens, blender)")
    parser.add_argument("--vector", type=Path, help="JSON file holding a precomputed query vector")
    parser.add_argument("--model", type=str, default="", help="Embedding model id of the query vector")
    parser.add_argument("--limit", type=int, default=5, help="Number of results to return")
    parser.add_argument("--collection", action="append", help="Restrict to a collection id (repeatable)")
    parser.add_argument("--storage", type=Path, help="Storage root overriding the configured one")
    args = parser.parse_args()

    settings = AppSettings.from_env()
    if args.storage is not None:
        settings.storage_root = args.storage
    configure_logging(settings.log_level)

    manager = KnowledgeManager(settings)
    manager.warmup(wait=True)

    vector = None
    if args.vector is not None:
        vector = json.loads(args.vector.read_text(encoding="utf-8"))

    filters = SearchFilters(collection_ids=args.collection, limit=args.limit)
    results = manager.search(args.text, filters, engine_id=args.engine, vector=vector, model=args.model)

    for result in results:
        print(f"id={result.aku.id} score={result.score:.4f} collection={result.collection_name} key={result.aku.key}")
        if result.highlight:
            print(f"    {result.highlight}")


if __name__ == "__main__":
    main()
