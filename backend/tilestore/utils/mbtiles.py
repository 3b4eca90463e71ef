"""Reading and writing MBTiles archives.

MBTiles is a SQLite database with a ``metadata`` key/value table and a
``tiles`` table addressed by zoom, column and row. Rows are stored in the
TMS scheme (row 0 at the bottom); this module converts to and from the XYZ
scheme used by the HTTP API so callers never see TMS rows.

Example:
    Write a one-tile archive and read it back:
        >>> with MBTilesArchive.create(path) as archive:
        ...     archive.write_metadata({"name": "demo", "format": "png"})
        ...     archive.put_tile(0, 0, 0, png_bytes)
        >>> with MBTilesArchive.open(path) as archive:
        ...     archive.get_tile(0, 0, 0) == png_bytes
        True
"""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    import types
    from collections.abc import Iterable, Iterator, Mapping

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metadata (name TEXT, value TEXT);
CREATE UNIQUE INDEX IF NOT EXISTS metadata_name ON metadata (name);
CREATE TABLE IF NOT EXISTS tiles (
    zoom_level INTEGER,
    tile_column INTEGER,
    tile_row INTEGER,
    tile_data BLOB
);
CREATE UNIQUE INDEX IF NOT EXISTS tile_index
    ON tiles (zoom_level, tile_column, tile_row);
"""

TileRow = tuple[int, int, int, bytes]


def flip_y(z: int, y: int) -> int:
    """Convert a row between the XYZ and TMS schemes (the flip is symmetric)."""
    return (1 << z) - 1 - y


class MBTilesArchive:
    """A handle on one MBTiles file.

    Use the ``open`` and ``create`` constructors rather than calling the
    initializer directly; both return context managers that close the
    connection (committing pending writes on success).
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    @classmethod
    def open(cls, path: pathlib.Path) -> MBTilesArchive:
        """Open an existing archive read-only."""
        conn = sqlite3.connect(
            f"{path.resolve().as_uri()}?mode=ro",
            uri=True,
            check_same_thread=False,
        )
        return cls(conn)

    @classmethod
    def create(cls, path: pathlib.Path) -> MBTilesArchive:
        """Create (or open for writing) an archive and ensure its schema."""
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False)
        conn.executescript(SCHEMA_SQL)
        return cls(conn)

    def __enter__(self) -> MBTilesArchive:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: types.TracebackType | None,
    ) -> None:
        if exc_type is None:
            self._conn.commit()
        self._conn.close()

    def metadata(self) -> dict[str, str]:
        rows = self._conn.execute("SELECT name, value FROM metadata").fetchall()
        return {str(name): str(value) for name, value in rows}

    def write_metadata(self, values: Mapping[str, object]) -> None:
        self._conn.executemany(
            "INSERT OR REPLACE INTO metadata (name, value) VALUES (?, ?)",
            [(name, str(value)) for name, value in values.items()],
        )

    def tile_count(self) -> int:
        (count,) = self._conn.execute("SELECT COUNT(*) FROM tiles").fetchone()
        return int(count)

    def get_tile(self, z: int, x: int, y: int) -> bytes | None:
        """Return the tile at XYZ coordinates, or None if absent."""
        row = self._conn.execute(
            "SELECT tile_data FROM tiles WHERE zoom_level = ? "
            "AND tile_column = ? AND tile_row = ?",
            (z, x, flip_y(z, y)),
        ).fetchone()
        return bytes(row[0]) if row is not None else None

    def put_tile(self, z: int, x: int, y: int, data: bytes) -> None:
        """Store a tile at XYZ coordinates."""
        self._conn.execute(
            "INSERT OR REPLACE INTO tiles "
            "(zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)",
            (z, x, flip_y(z, y), sqlite3.Binary(data)),
        )

    def iter_rows(self) -> Iterator[TileRow]:
        """Yield raw ``(zoom, column, tms_row, data)`` rows."""
        cursor = self._conn.execute(
            "SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles"
        )
        for z, x, row, data in cursor:
            yield int(z), int(x), int(row), bytes(data)

    def put_rows(self, rows: Iterable[TileRow]) -> None:
        """Store raw TMS rows as produced by iter_rows."""
        self._conn.executemany(
            "INSERT OR REPLACE INTO tiles "
            "(zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)",
            rows,
        )

    def commit(self) -> None:
        self._conn.commit()
