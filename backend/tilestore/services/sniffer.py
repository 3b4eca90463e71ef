"""Format sniffing for uploaded geodata files.

The sniffer looks at a file's leading bytes (and, for containers and text
formats, a little of its content) to decide which conversion protocol
applies and whether the file is a container that must be unpacked first.

Recognising a format is separate from supporting it: TileJSON documents,
tm2z bundles and serialtiles dumps are classified under their own protocols
so the caller can reject them as unsupported, while files that match no
known signature raise UnreadableFileError.

Example:
    >>> from tilestore.services import sniffer
    >>> sniffer.classify(pathlib.Path("roads.zip"))
    FileInfo(protocol='omnivore', type='zip')
"""

from __future__ import annotations

import dataclasses
import gzip
import sqlite3
import tarfile
import zipfile
from typing import TYPE_CHECKING

from tilestore.core import errors

if TYPE_CHECKING:
    import pathlib

HEAD_SIZE = 4096
TEXT_PROBE_SIZE = 1024 * 1024

SQLITE_MAGIC = b"SQLite format 3\x00"
ZIP_MAGIC = b"PK\x03\x04"
GZIP_MAGIC = b"\x1f\x8b"
TIFF_MAGICS = (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+")

GEOJSON_MARKERS = (
    '"FeatureCollection"',
    '"Feature"',
    '"Point"',
    '"MultiPoint"',
    '"LineString"',
    '"MultiLineString"',
    '"Polygon"',
    '"MultiPolygon"',
    '"GeometryCollection"',
)


@dataclasses.dataclass(frozen=True)
class FileInfo:
    """Result of sniffing a file.

    Attributes:
        protocol: Conversion protocol that applies ("omnivore" for generic
            geodata, "mbtiles" for tile archives, or an unsupported one).
        type: Concrete file type; "zip" marks a container that needs
            normalization before conversion.
    """

    protocol: str
    type: str


def classify(path: pathlib.Path) -> FileInfo:
    """Classify a file by content.

    Args:
        path: File to inspect.

    Returns:
        FileInfo with the protocol and type of the file.

    Raises:
        UnreadableFileError: If the file cannot be read, is empty, or does
            not match any known format.
    """
    try:
        with path.open("rb") as fh:
            head = fh.read(HEAD_SIZE)
    except OSError as exc:
        raise errors.UnreadableFileError(f"Cannot read upload: {exc}") from exc

    if not head:
        raise errors.UnreadableFileError("Uploaded file is empty")

    if head.startswith(SQLITE_MAGIC):
        return _classify_sqlite(path)
    if head.startswith(ZIP_MAGIC):
        return _classify_zip(path)
    if head.startswith(GZIP_MAGIC):
        return _classify_gzip(path)
    if head.startswith(TIFF_MAGICS):
        return FileInfo("omnivore", "tif")

    return _classify_text(path)


def _classify_sqlite(path: pathlib.Path) -> FileInfo:
    try:
        conn = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
        try:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master "
                "WHERE name = 'tiles' AND type IN ('table', 'view')"
            ).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        raise errors.UnreadableFileError(
            f"Cannot open SQLite upload: {exc}"
        ) from exc
    if row is None:
        raise errors.UnreadableFileError(
            "SQLite upload is not an MBTiles archive"
        )
    return FileInfo("mbtiles", "mbtiles")


def _classify_zip(path: pathlib.Path) -> FileInfo:
    try:
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile as exc:
        raise errors.UnreadableFileError(f"Corrupt zip upload: {exc}") from exc
    if any(name.lower().endswith(".shp") for name in names):
        return FileInfo("omnivore", "zip")
    raise errors.UnreadableFileError("Zip upload does not contain a shapefile")


def _classify_gzip(path: pathlib.Path) -> FileInfo:
    try:
        if tarfile.is_tarfile(path):
            return FileInfo("tm2z", "tm2z")
        with gzip.open(path, "rb") as fh:
            head = fh.read(HEAD_SIZE)
    except (OSError, EOFError, tarfile.TarError) as exc:
        raise errors.UnreadableFileError(f"Corrupt gzip upload: {exc}") from exc
    if head.lstrip().startswith(b"{"):
        return FileInfo("serialtiles", "serialtiles")
    raise errors.UnreadableFileError("Unknown compressed file type")


def _classify_text(path: pathlib.Path) -> FileInfo:
    with path.open("rb") as fh:
        probe = fh.read(TEXT_PROBE_SIZE)
    stripped = probe.decode("utf-8-sig", errors="replace").lstrip()

    if stripped.startswith("{"):
        return _classify_json(stripped)
    if stripped.startswith("<"):
        return _classify_xml(stripped)
    if _looks_like_csv(stripped):
        return FileInfo("omnivore", "csv")
    raise errors.UnreadableFileError("Unknown file type")


def _classify_json(text: str) -> FileInfo:
    if '"tilejson"' in text:
        return FileInfo("tilejson", "tilejson")
    if '"Topology"' in text:
        return FileInfo("omnivore", "topojson")
    if any(marker in text for marker in GEOJSON_MARKERS):
        return FileInfo("omnivore", "geojson")
    raise errors.UnreadableFileError("JSON upload is not GeoJSON or TopoJSON")


def _classify_xml(text: str) -> FileInfo:
    lowered = text[:HEAD_SIZE].lower()
    if "<kml" in lowered:
        return FileInfo("omnivore", "kml")
    if "<gpx" in lowered:
        return FileInfo("omnivore", "gpx")
    if "<vrtdataset" in lowered:
        return FileInfo("omnivore", "vrt")
    raise errors.UnreadableFileError("Unknown XML file type")


def _looks_like_csv(text: str) -> bool:
    header = text.split("\n", 1)[0].strip().lower()
    if "," not in header:
        return False
    columns = [column.strip().strip('"') for column in header.split(",")]
    has_lat = any(column in ("lat", "latitude", "y") for column in columns)
    has_lon = any(
        column in ("lon", "lng", "long", "longitude", "x") for column in columns
    )
    return has_lat and has_lon
