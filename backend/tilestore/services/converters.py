"""Tile converter capability, registry and the MBTiles passthrough converter.

A converter knows how to describe a source (``info``) and how to copy it
into an MBTiles archive (``copy``). Converters are looked up by the protocol
the sniffer selected, through a ConverterRegistry that the application
builds explicitly at startup.

Example:
    >>> registry = ConverterRegistry({"mbtiles": MBTilesConverter()})
    >>> registry.supports("tilejson")
    False
    >>> converter = registry.get("mbtiles")
    >>> converter.copy(locator, dest, progress=print, deadline=Deadline(60))
"""

from __future__ import annotations

import dataclasses
import sqlite3
import time
from typing import TYPE_CHECKING, Any, Protocol

from tilestore.core import errors, log
from tilestore.utils import mbtiles

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Mapping

    from tilestore.services import normalizer

LOGGER = log.get_logger(__name__)

COPY_BATCH_SIZE = 500


@dataclasses.dataclass
class SourceInfo:
    """Descriptive information about a source, read without importing it."""

    name: str | None = None
    description: str | None = None
    format: str | None = None
    minzoom: int | None = None
    maxzoom: int | None = None
    bounds: tuple[float, float, float, float] | None = None

    def as_metadata(self) -> dict[str, Any]:
        """Render as MBTiles metadata values, skipping unknown fields."""
        metadata: dict[str, Any] = {}
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if value is None:
                continue
            if field.name == "bounds":
                value = ",".join(f"{v:.6f}" for v in value)
            metadata[field.name] = value
        return metadata


class Deadline:
    """Overall time budget shared by every retry of one conversion."""

    def __init__(
        self,
        seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self) -> None:
        """Raise ConversionTimeoutError once the budget is spent."""
        if self.expired():
            raise errors.ConversionTimeoutError(
                f"Import timed out after {self.seconds:g} seconds"
            )


class Converter(Protocol):
    """Capability interface every tile converter implements."""

    def info(self, source: normalizer.SourceLocator) -> SourceInfo: ...

    def copy(
        self,
        source: normalizer.SourceLocator,
        destination: pathlib.Path,
        *,
        progress: Callable[[int, int], None],
        deadline: Deadline,
    ) -> None: ...


class ConverterRegistry:
    """Maps sniffed protocols to the converters that handle them."""

    def __init__(self, converters: Mapping[str, Converter] | None = None) -> None:
        self._converters: dict[str, Converter] = dict(converters or {})

    def register(self, protocol: str, converter: Converter) -> None:
        self._converters[protocol] = converter

    def supports(self, protocol: str) -> bool:
        return protocol in self._converters

    def get(self, protocol: str) -> Converter:
        try:
            return self._converters[protocol]
        except KeyError:
            raise errors.UnsupportedFormatError(
                f"Unsupported file format: {protocol}"
            ) from None

    @property
    def protocols(self) -> list[str]:
        return sorted(self._converters)


class MBTilesConverter:
    """Copy tiles from an uploaded MBTiles archive into the tileset archive."""

    def info(self, source: normalizer.SourceLocator) -> SourceInfo:
        try:
            with mbtiles.MBTilesArchive.open(source.path) as archive:
                metadata = archive.metadata()
        except sqlite3.Error as exc:
            raise errors.UnreadableFileError(
                f"Cannot read MBTiles metadata: {exc}"
            ) from exc
        return SourceInfo(
            name=metadata.get("name"),
            description=metadata.get("description"),
            format=metadata.get("format"),
            minzoom=_optional_int(metadata.get("minzoom")),
            maxzoom=_optional_int(metadata.get("maxzoom")),
            bounds=_optional_bounds(metadata.get("bounds")),
        )

    def copy(
        self,
        source: normalizer.SourceLocator,
        destination: pathlib.Path,
        *,
        progress: Callable[[int, int], None],
        deadline: Deadline,
    ) -> None:
        try:
            with (
                mbtiles.MBTilesArchive.open(source.path) as src,
                mbtiles.MBTilesArchive.create(destination) as dst,
            ):
                dst.write_metadata(src.metadata())
                total = src.tile_count()
                done = 0
                batch: list[mbtiles.TileRow] = []
                for row in src.iter_rows():
                    batch.append(row)
                    if len(batch) >= COPY_BATCH_SIZE:
                        deadline.check()
                        dst.put_rows(batch)
                        done += len(batch)
                        batch.clear()
                        progress(done, total)
                dst.put_rows(batch)
                done += len(batch)
                progress(done, max(total, 1))
        except sqlite3.Error as exc:
            raise errors.ConversionError(f"MBTiles copy failed: {exc}") from exc
        LOGGER.info("copied %d tiles from %s", done, source)


def _optional_int(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _optional_bounds(
    value: str | None,
) -> tuple[float, float, float, float] | None:
    if not value:
        return None
    try:
        west, south, east, north = (float(part) for part in value.split(","))
    except ValueError:
        return None
    return (west, south, east, north)
