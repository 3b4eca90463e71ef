"""Data models for tileset records.

This module defines the Tileset dataclass, the metadata record kept for every
uploaded tile archive. A record tracks who owns the tileset, its display
metadata, and the state of the most recent import attempt (completion flag,
progress percentage and error detail).

Example:
    A freshly created record before any import has run:
        >>> from tilestore.db.models import Tileset
        >>> tileset = Tileset(owner="acme", tileset_id="roads")
        >>> tileset.complete, tileset.progress
        (False, 0)

    The JSON shape returned by the HTTP API:
        >>> tileset.to_json()["tilesetId"]
        'roads'
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Any


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass
class Tileset:
    """Metadata record for one tileset.

    Attributes:
        owner: Account or namespace owning the tileset.
        tileset_id: Identifier unique within the owner. None until the
            record store assigns one.
        name: Human-readable name, defaulted from the source on import.
        description: Optional description, defaulted from the source.
        complete: False while an import is pending or running, True once
            the last import attempt finished (with or without error).
        progress: Import progress percentage (0-100) of the current attempt.
        error: Failure detail of the last import attempt, if it failed.
        created_at: Timestamp when the record was created.
    """

    owner: str
    tileset_id: str | None = None
    name: str | None = None
    description: str | None = None
    complete: bool = False
    progress: int = 0
    error: str | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    def to_json(self) -> dict[str, Any]:
        """Serialize the record into the API's JSON representation."""
        return {
            "owner": self.owner,
            "tilesetId": self.tileset_id,
            "name": self.name,
            "description": self.description,
            "complete": self.complete,
            "progress": self.progress,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
        }


UPDATABLE_FIELDS = frozenset(
    {"name", "description", "complete", "progress", "error"}
)
