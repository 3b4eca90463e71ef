"""Database helpers and repositories for tileset records."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import threading
import uuid
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
from psycopg2 import sql

from tilestore.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from tilestore.core import config

MEMORY_URL = "memory://"


def _check_fields(fields: Mapping[str, object]) -> None:
    unknown = set(fields) - db_models.UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {sorted(unknown)}")


class TilesetRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving tileset records.

    Every operation is atomic for the record it touches; no operation spans
    more than one record.
    """

    def list(self, owner: str) -> list[db_models.Tileset]: ...

    def find(
        self,
        owner: str,
        tileset_id: str,
    ) -> db_models.Tileset | None: ...

    def insert(self, tileset: db_models.Tileset) -> db_models.Tileset: ...

    def update(
        self,
        owner: str,
        tileset_id: str,
        fields: Mapping[str, object],
    ) -> db_models.Tileset | None: ...

    def remove(
        self,
        owner: str,
        tileset_id: str,
    ) -> db_models.Tileset | None: ...


class InMemoryTilesetRepository(TilesetRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Records are kept in a dictionary keyed by ``(owner, tileset_id)`` and
    guarded by a lock, since background imports update them from worker
    threads. Callers always receive copies, so a record handed to an HTTP
    response is never mutated by a later progress write.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._store: dict[tuple[str, str], db_models.Tileset] = {}
        self._lock = threading.Lock()

    def list(self, owner: str) -> list[db_models.Tileset]:
        """Get all tilesets of an owner, newest first."""
        with self._lock:
            tilesets = [
                dataclasses.replace(tileset)
                for (record_owner, _), tileset in self._store.items()
                if record_owner == owner
            ]
        return sorted(tilesets, key=lambda t: t.created_at, reverse=True)

    def find(self, owner: str, tileset_id: str) -> db_models.Tileset | None:
        """Retrieve a tileset by owner and id.

        Returns:
            A copy of the stored Tileset if found, None otherwise.
        """
        with self._lock:
            tileset = self._store.get((owner, tileset_id))
            return dataclasses.replace(tileset) if tileset else None

    def insert(self, tileset: db_models.Tileset) -> db_models.Tileset:
        """Store a new tileset, assigning an id when it has none.

        Raises:
            ValueError: If a tileset with the same owner and id exists.
        """
        record = dataclasses.replace(
            tileset,
            tileset_id=tileset.tileset_id or str(uuid.uuid4()),
        )
        key = (record.owner, cast(str, record.tileset_id))
        with self._lock:
            if key in self._store:
                raise ValueError(f"Tileset {key[0]}/{key[1]} already exists")
            self._store[key] = record
            return dataclasses.replace(record)

    def update(
        self,
        owner: str,
        tileset_id: str,
        fields: Mapping[str, object],
    ) -> db_models.Tileset | None:
        """Apply a partial update to a tileset.

        Returns:
            The updated Tileset, or None if no such tileset exists.
        """
        _check_fields(fields)
        with self._lock:
            tileset = self._store.get((owner, tileset_id))
            if tileset is None:
                return None
            updated = dataclasses.replace(tileset, **fields)  # type: ignore[arg-type]
            self._store[(owner, tileset_id)] = updated
            return dataclasses.replace(updated)

    def remove(self, owner: str, tileset_id: str) -> db_models.Tileset | None:
        """Delete a tileset, returning the removed record if it existed."""
        with self._lock:
            tileset = self._store.pop((owner, tileset_id), None)
            return dataclasses.replace(tileset) if tileset else None


class PostgresTilesetRepository(TilesetRepositoryProtocol):
    """PostgreSQL-backed repository for tileset records.

    Creates the tilesets table on initialization. Each operation opens its
    own connection, so the repository is safe to share with background
    import threads.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS tilesets (
      owner TEXT NOT NULL,
      tileset_id TEXT NOT NULL,
      name TEXT,
      description TEXT,
      complete BOOLEAN NOT NULL DEFAULT false,
      progress INTEGER NOT NULL DEFAULT 0,
      error TEXT,
      created_at TIMESTAMPTZ DEFAULT now(),
      PRIMARY KEY (owner, tileset_id)
    );
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(
            self.settings.database_url,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )

    @contextlib.contextmanager
    def _cursor(self) -> Iterator[psycopg2.extensions.cursor]:
        """Yield a cursor inside a transaction and close the connection."""
        with contextlib.closing(self._connection()) as conn:
            with conn, conn.cursor() as cur:
                yield cur

    def _ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(self.CREATE_TABLE_SQL)

    def list(self, owner: str) -> list[db_models.Tileset]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM tilesets WHERE owner = %s "
                "ORDER BY created_at DESC",
                (owner,),
            )
            return [self._from_row(row) for row in cur.fetchall()]

    def find(self, owner: str, tileset_id: str) -> db_models.Tileset | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM tilesets WHERE owner = %s AND tileset_id = %s",
                (owner, tileset_id),
            )
            row = cur.fetchone()
            if row is None:
                return None
            else:
                return self._from_row(row)

    def insert(self, tileset: db_models.Tileset) -> db_models.Tileset:
        record = dataclasses.replace(
            tileset,
            tileset_id=tileset.tileset_id or str(uuid.uuid4()),
        )
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO tilesets (
                    owner, tileset_id, name, description, complete,
                    progress, error, created_at
                ) VALUES (%(owner)s, %(tileset_id)s, %(name)s,
                    %(description)s, %(complete)s, %(progress)s, %(error)s,
                    %(created_at)s)
                RETURNING *;
                """,
                self._to_row(record),
            )
            return self._from_row(cur.fetchone())

    def update(
        self,
        owner: str,
        tileset_id: str,
        fields: Mapping[str, object],
    ) -> db_models.Tileset | None:
        _check_fields(fields)
        if not fields:
            return self.find(owner, tileset_id)

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name))
            for name in sorted(fields)
        )
        query = sql.SQL(
            "UPDATE tilesets SET {} WHERE owner = %(_owner)s "
            "AND tileset_id = %(_tileset_id)s RETURNING *"
        ).format(assignments)
        params = {**fields, "_owner": owner, "_tileset_id": tileset_id}
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
            return self._from_row(row) if row is not None else None

    def remove(self, owner: str, tileset_id: str) -> db_models.Tileset | None:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM tilesets WHERE owner = %s AND tileset_id = %s "
                "RETURNING *",
                (owner, tileset_id),
            )
            row = cur.fetchone()
            return self._from_row(row) if row is not None else None

    @staticmethod
    def _to_row(tileset: db_models.Tileset) -> dict[str, object]:
        """Convert a Tileset to a parameter dictionary for SQL."""
        return {
            "owner": tileset.owner,
            "tileset_id": tileset.tileset_id,
            "name": tileset.name,
            "description": tileset.description,
            "complete": tileset.complete,
            "progress": tileset.progress,
            "error": tileset.error,
            "created_at": tileset.created_at,
        }

    @staticmethod
    def _from_row(row: Mapping[str, Any]) -> db_models.Tileset:
        """Convert a database row to a Tileset."""
        created_at = row.get("created_at") or datetime.datetime.now(
            datetime.UTC
        )
        return db_models.Tileset(
            owner=str(row["owner"]),
            tileset_id=str(row["tileset_id"]),
            name=row.get("name"),
            description=row.get("description"),
            complete=bool(row.get("complete")),
            progress=int(row.get("progress") or 0),
            error=row.get("error"),
            created_at=created_at,
        )


_repositories: dict[str, TilesetRepositoryProtocol] = {}
_repositories_lock = threading.Lock()


def get_tileset_repository(
    settings: config.Settings,
) -> TilesetRepositoryProtocol:
    """Return the repository for the configured database URL.

    Repositories are created once per URL, so the schema check runs once and
    the ``memory://`` store keeps its records across requests.

    Args:
        settings: Application settings for database connection.

    Returns:
        InMemoryTilesetRepository for ``memory://``, otherwise a
        PostgresTilesetRepository.
    """
    url = settings.database_url
    with _repositories_lock:
        repo = _repositories.get(url)
        if repo is None:
            if url.startswith(MEMORY_URL):
                repo = InMemoryTilesetRepository()
            else:
                repo = PostgresTilesetRepository(settings)
            _repositories[url] = repo
        return repo
