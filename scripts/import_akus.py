# Path: scripts/import_akus.py
# Purpose: CLI tool to import a folder of text files into a knowledge collection.
# Layer: scripts.
# Details: Demonstrates how to wire settings, warmup, and batch import through the knowledge manager.

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import AppSettings
from knowledge.logging_config import configure_logging
from knowledge.models.domain import ImportConfig
from knowledge.storage.manager import KnowledgeManager


def main() -> None:
    """Import every matching file of a folder as AKUs."""

    parser = argparse.ArgumentParser(description="Import text files into a knowledge collection")
    parser.add_argument("--folder", type=Path, required=True, help="Folder containing text files to import")
    parser.add_argument("--pattern", type=str, default="*.md", help="Glob pattern selecting the files")
    parser.add_argument("--collection", type=str, help="Existing collection id; a new collection is created when omitted")
    parser.add_argument("--name", type=str, default="Imported", help="Name of the collection to create")
    parser.add_argument("--storage", type=Path, help="Storage root overriding the configured one")
    parser.add_argument("--dedupe", action="store_true", help="Skip files whose content is already stored")
    parser.add_argument("--extract-title", action="store_true", help="Use the first markdown heading as the key")
    parser.add_argument("--extract-tags", action="store_true", help="Read tags from a 'Tags:' line")
    parser.add_argument("--tag", action="append", default=[], help="Default tag applied to every AKU (repeatable)")
    args = parser.parse_args()

    settings = AppSettings.from_env()
    if args.storage is not None:
        settings.storage_root = args.storage
    settings.show_progress = True
    configure_logging(settings.log_level)

    manager = KnowledgeManager(settings)
    manager.warmup(wait=True)

    collection_id = args.collection
    if collection_id is None:
        collection_id = manager.create_collection(args.name).id

    paths = sorted(path for path in args.folder.rglob(args.pattern) if path.is_file())
    import_config = ImportConfig(
        auto_extract_tags=args.extract_tags,
        auto_extract_title=args.extract_title,
        default_tags=args.tag,
    )
    result = manager.import_files(collection_id, paths, deduplicate=args.dedupe, import_config=import_config)
    print(
        f"Imported {len(result.entries)} file(s) into {collection_id} "
        f"(skipped={result.skipped_count}, duplicates={result.duplicate_count})"
    )


if __name__ == "__main__":
    main()
