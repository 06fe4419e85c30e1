# Path: knowledge/__init__.py
# Purpose: Package initializer for the knowledge retrieval core.
# Layer: knowledge.
# Details: Aggregates subpackages for models, indexing, vector stores, storage, and search engines.
