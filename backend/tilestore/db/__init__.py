"""Database interface and repository abstractions.

This package holds the Tileset record model and the repositories that
persist it. The repository protocol is the only seam the import pipeline
and the HTTP layer depend on, so the in-memory store can stand in for
PostgreSQL in tests and local development.

Example:
    Use in a service or FastAPI dependency:
        >>> from tilestore.db import database
        >>> repo = database.get_tileset_repository(settings)
"""
