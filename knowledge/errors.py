# Path: knowledge/errors.py
# Purpose: Define the exception hierarchy raised by the knowledge core.
# Layer: knowledge.
# Details: Every error carries a short human-readable message suitable for API and CLI surfaces.

from __future__ import annotations


class KnowledgeError(Exception):
    """Base class for all errors surfaced by the knowledge core."""


class NotFoundError(KnowledgeError, LookupError):
    """Raised when a collection, AKU, model, or engine id is unknown."""


class LockContentionError(KnowledgeError):
    """Raised when a reader/writer lock cannot be acquired in time."""


class MalformedDataError(KnowledgeError, ValueError):
    """Raised when a persisted file cannot be parsed into a domain record."""

    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"Malformed data in {path}: {reason}")
        self.path = path
        self.reason = reason


class StorageError(KnowledgeError, OSError):
    """Raised when a required write to the storage root fails."""


__all__ = ["KnowledgeError", "LockContentionError", "MalformedDataError", "NotFoundError", "StorageError"]
