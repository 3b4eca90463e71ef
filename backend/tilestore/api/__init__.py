"""API router subpackage for the tileset server.

Submodules:
    - tilesets: Endpoints for listing, describing, importing, renaming and
      deleting tilesets.
    - tiles: Endpoint serving individual XYZ tiles from tileset archives.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""
