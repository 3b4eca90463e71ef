"""XYZ tile serving endpoint for imported tilesets.

Tiles are read straight from the tileset's MBTiles archive and returned
with the archive's content type and encoding, so vector tiles keep their
gzip encoding and raster tiles their image type.

Coordinates are parsed leniently: a non-numeric ``z``, ``x`` or ``y``
is treated as 0 rather than rejected.

Example:
    Request a tile:
        >>> response = client.get("/acme/tilesets/roads/5/10/20.pbf")
        >>> response.headers["content-type"]
        'application/x-protobuf'

    Use in MapLibre GL JS with the template from the tileset endpoint:
        >>> map.addSource('roads', {
        ...     type: 'vector',
        ...     tiles: ['http://api/acme/tilesets/roads/{z}/{x}/{y}.pbf']
        ... });
"""

import fastapi
from fastapi import responses

from tilestore.core import config, errors
from tilestore.db import database
from tilestore.services import tiles

router = fastapi.APIRouter(tags=["tiles"])


def _get_settings(request: fastapi.Request) -> config.Settings:
    """Settings the application was created with."""
    return request.app.state.settings


def _get_repo(
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
) -> database.TilesetRepositoryProtocol:
    """Resolve the tileset repository dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        TilesetRepositoryProtocol implementation for the configured
        database URL.
    """
    return database.get_tileset_repository(settings)


@router.get("/{owner}/tilesets/{tileset_id}/{z}/{x}/{y}.{ext}")
async def get_tile(
    owner: str,
    tileset_id: str,
    z: str,
    x: str,
    y: str,
    ext: str,
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
    repo: database.TilesetRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> responses.Response:
    """Serve one tile of a tileset.

    Args:
        owner: Owner of the tileset.
        tileset_id: Tileset identifier.
        z: Zoom level.
        x: Tile column.
        y: Tile row (XYZ scheme, row 0 at the top).
        ext: Requested extension; the archive decides the actual format.
        settings: Application settings (injected via FastAPI Depends).
        repo: Tileset repository (injected via FastAPI Depends).

    Returns:
        The raw tile bytes with Content-Type, Content-Encoding (for gzipped
        vector tiles), Last-Modified and ETag headers.

    Raises:
        NotFoundError: If the tileset, its archive, or the tile is missing.
    """
    if repo.find(owner, tileset_id) is None:
        raise errors.NotFoundError(f"Tileset {owner}/{tileset_id} not found")

    path = tiles.archive_path(settings.tilesets_dir, owner, tileset_id)
    data, headers = tiles.get_tile(
        path,
        tiles.coerce_coordinate(z),
        tiles.coerce_coordinate(x),
        tiles.coerce_coordinate(y),
    )
    media_type = headers.pop("Content-Type")
    return responses.Response(content=data, media_type=media_type, headers=headers)
