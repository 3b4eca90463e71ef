"""Tile read path over completed MBTiles archives.

Every tileset has one archive at a deterministic location derived from its
owner and id. This module resolves that location, reads archive metadata
for the tileset endpoint, and answers single-tile lookups with the headers
a map client expects.

Example:
    >>> path = archive_path(settings.tilesets_dir, "acme", "roads")
    >>> data, headers = get_tile(path, 5, 10, 20)
    >>> headers["Content-Type"]
    'application/x-protobuf'
"""

from __future__ import annotations

import email.utils
import hashlib
import math
import sqlite3
from typing import TYPE_CHECKING, Any

from tilestore.core import errors
from tilestore.utils import mbtiles

if TYPE_CHECKING:
    import pathlib

ARCHIVE_SUFFIX = ".mbtiles"
GZIP_MAGIC = b"\x1f\x8b"
# Deepest zoom any archive is looked up at; keeps x and y within SQLite INTEGER.
MAX_ZOOM = 30

CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "pbf": "application/x-protobuf",
    "mvt": "application/x-protobuf",
}

INT_METADATA = ("minzoom", "maxzoom")
FLOAT_LIST_METADATA = ("bounds", "center")


def archive_path(
    tilesets_dir: pathlib.Path,
    owner: str,
    tileset_id: str,
) -> pathlib.Path:
    """Location of a tileset's archive: ``<dir>/<owner>/<id>.mbtiles``."""
    return tilesets_dir / owner / f"{tileset_id}{ARCHIVE_SUFFIX}"


def coerce_coordinate(value: str) -> int:
    """Parse a tile coordinate leniently.

    Non-numeric, negative and non-finite values become 0; fractional values
    are truncated.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(number)


def tile_url_template(base_url: str, tile_format: str) -> str:
    """Append the ``{z}/{x}/{y}.<format>`` suffix to a tileset URL."""
    return f"{base_url.rstrip('/')}/{{z}}/{{x}}/{{y}}.{tile_format}"


def read_info(path: pathlib.Path) -> dict[str, Any]:
    """Read an archive's metadata with numeric fields decoded.

    Raises:
        NotFoundError: If the archive does not exist.
    """
    if not path.is_file():
        raise errors.NotFoundError(f"Tile archive {path.name} not found")
    with mbtiles.MBTilesArchive.open(path) as archive:
        metadata: dict[str, Any] = dict(archive.metadata())

    for key in INT_METADATA:
        if key in metadata:
            try:
                metadata[key] = int(metadata[key])
            except ValueError:
                del metadata[key]
    for key in FLOAT_LIST_METADATA:
        if key in metadata:
            try:
                metadata[key] = [float(v) for v in metadata[key].split(",")]
            except ValueError:
                del metadata[key]
    metadata.setdefault("format", "png")
    return metadata


def get_tile(
    path: pathlib.Path,
    z: int,
    x: int,
    y: int,
) -> tuple[bytes, dict[str, str]]:
    """Fetch one tile by XYZ coordinates.

    Returns:
        The tile bytes and response headers (content type, encoding,
        Last-Modified and ETag).

    Raises:
        NotFoundError: If the archive or the tile does not exist.
    """
    if not path.is_file():
        raise errors.NotFoundError(f"Tile archive {path.name} not found")
    if z > MAX_ZOOM or x >= 1 << z or y >= 1 << z:
        raise errors.NotFoundError("Tile does not exist")

    try:
        with mbtiles.MBTilesArchive.open(path) as archive:
            data = archive.get_tile(z, x, y)
            tile_format = archive.metadata().get("format", "png")
    except sqlite3.Error as exc:
        raise errors.NotFoundError(f"Tile archive unreadable: {exc}") from exc
    if data is None:
        raise errors.NotFoundError("Tile does not exist")

    stat = path.stat()
    headers = {
        "Content-Type": CONTENT_TYPES.get(tile_format, "application/octet-stream"),
        "Last-Modified": email.utils.formatdate(stat.st_mtime, usegmt=True),
        "ETag": '"{}"'.format(hashlib.md5(data, usedforsecurity=False).hexdigest()),
    }
    if data.startswith(GZIP_MAGIC):
        headers["Content-Encoding"] = "gzip"
    return data, headers


def remove_archive(path: pathlib.Path) -> None:
    """Delete an archive; a tileset that never finished an import has none."""
    path.unlink(missing_ok=True)
