# Path: api/__init__.py
# Purpose: Package initializer for HTTP API layer.
# Layer: api.
# Details: Exposes the FastAPI application factory; fastapi itself is imported lazily.

from .app import create_app, error_status

__all__ = ["create_app", "error_status"]
