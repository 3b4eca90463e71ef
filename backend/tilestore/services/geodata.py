"""Converter for generic geodata sources (rasters and vector files).

Rasters (GeoTIFF, VRT) are rendered tile by tile with rio-tiler into PNG
tiles of the Web Mercator grid, which gives exact ``(done, total)`` progress
and lets the overall deadline be checked between tiles.

Vector sources (shapefiles, GeoJSON, TopoJSON, KML, GPX, CSV) are turned
into Mapbox Vector Tiles by GDAL's MBTiles driver through ogr2ogr. GDAL's
own progress meter is parsed into percentages, and the subprocess is killed
when the deadline passes.

Example:
    >>> converter = GeodataConverter(settings)
    >>> info = converter.info(locator)
    >>> converter.copy(
    ...     locator,
    ...     pathlib.Path("/srv/tilesets/acme/roads.mbtiles.partial"),
    ...     progress=lambda done, total: None,
    ...     deadline=converters.Deadline(120),
    ... )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import rasterio.errors
from rio_tiler import errors as rio_tiler_errors
from rio_tiler import io as rio_tiler_io

from tilestore.core import errors, log
from tilestore.services import converters
from tilestore.utils import gdal_helpers, mbtiles

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable

    from tilestore.core import config
    from tilestore.services import normalizer

LOGGER = log.get_logger(__name__)

RASTER_TYPES = frozenset({"tif", "vrt"})
MAX_LATITUDE = 85.0511287798
INFO_TIMEOUT_SECONDS = 60.0
# Same nudge morecantile applies to bounds before picking their corner tiles.
LL_EPSILON = 1e-11

CSV_OPEN_OPTIONS = (
    "-oo",
    "X_POSSIBLE_NAMES=lon*,lng*,long*,x",
    "-oo",
    "Y_POSSIBLE_NAMES=lat*,y",
)


class GeodataConverter:
    """Convert raster and vector geodata into MBTiles archives."""

    def __init__(self, settings: config.Settings) -> None:
        self.raster_max_zoom = settings.raster_max_zoom
        self.vector_max_zoom = settings.vector_max_zoom

    def info(self, source: normalizer.SourceLocator) -> converters.SourceInfo:
        if source.type in RASTER_TYPES:
            return self._raster_info(source)
        return self._vector_info(source)

    def copy(
        self,
        source: normalizer.SourceLocator,
        destination: pathlib.Path,
        *,
        progress: Callable[[int, int], None],
        deadline: converters.Deadline,
    ) -> None:
        if source.type in RASTER_TYPES:
            self._copy_raster(source, destination, progress, deadline)
        else:
            self._copy_vector(source, destination, progress, deadline)

    def _raster_info(
        self,
        source: normalizer.SourceLocator,
    ) -> converters.SourceInfo:
        try:
            with rio_tiler_io.Reader(input=str(source.path)) as reader:
                minzoom, maxzoom = self._raster_zooms(reader)
                bounds = _clamp_bounds(reader.geographic_bounds)
        except (rasterio.errors.RasterioError, rio_tiler_errors.RioTilerError) as exc:
            raise errors.UnreadableFileError(
                f"Cannot open raster upload: {exc}"
            ) from exc
        return converters.SourceInfo(
            name=source.name,
            format="png",
            minzoom=minzoom,
            maxzoom=maxzoom,
            bounds=bounds,
        )

    def _raster_zooms(self, reader: rio_tiler_io.Reader) -> tuple[int, int]:
        maxzoom = max(0, min(int(reader.maxzoom), self.raster_max_zoom))
        minzoom = max(0, min(int(reader.minzoom), maxzoom))
        return minzoom, maxzoom

    def _copy_raster(
        self,
        source: normalizer.SourceLocator,
        destination: pathlib.Path,
        progress: Callable[[int, int], None],
        deadline: converters.Deadline,
    ) -> None:
        try:
            with rio_tiler_io.Reader(input=str(source.path)) as reader:
                minzoom, maxzoom = self._raster_zooms(reader)
                bounds = _clamp_bounds(reader.geographic_bounds)
                zooms = list(range(minzoom, maxzoom + 1))
                total = sum(_count_tiles(reader.tms, bounds, zoom) for zoom in zooms)
                tiles = reader.tms.tiles(*bounds, zooms=zooms)
                done = 0
                info = converters.SourceInfo(
                    name=source.name,
                    format="png",
                    minzoom=minzoom,
                    maxzoom=maxzoom,
                    bounds=bounds,
                )
                with mbtiles.MBTilesArchive.create(destination) as archive:
                    archive.write_metadata({**info.as_metadata(), "type": "overlay"})
                    for done, tile in enumerate(tiles, start=1):
                        deadline.check()
                        try:
                            image = reader.tile(tile.x, tile.y, tile.z)
                        except rio_tiler_errors.TileOutsideBounds:
                            pass
                        else:
                            if image.mask.any():
                                archive.put_tile(
                                    tile.z,
                                    tile.x,
                                    tile.y,
                                    image.render(img_format="PNG"),
                                )
                        progress(done, total)
        except (rasterio.errors.RasterioError, rio_tiler_errors.RioTilerError) as exc:
            raise errors.ConversionError(f"Raster tiling failed: {exc}") from exc
        LOGGER.info("rendered %d raster tiles from %s", done, source)

    def _vector_info(
        self,
        source: normalizer.SourceLocator,
    ) -> converters.SourceInfo:
        command = ["ogrinfo", "-ro", "-so", "-al", "-q"]
        if source.type == "csv":
            command.extend(CSV_OPEN_OPTIONS)
        command.append(str(source.path))
        try:
            gdal_helpers.run_command(command, timeout=INFO_TIMEOUT_SECONDS)
        except gdal_helpers.CommandError as exc:
            raise errors.UnreadableFileError(
                f"Cannot open vector upload: {exc}"
            ) from exc
        return converters.SourceInfo(
            name=source.name,
            format="pbf",
            minzoom=0,
            maxzoom=self.vector_max_zoom,
        )

    def _copy_vector(
        self,
        source: normalizer.SourceLocator,
        destination: pathlib.Path,
        progress: Callable[[int, int], None],
        deadline: converters.Deadline,
    ) -> None:
        command = [
            "ogr2ogr",
            "-f",
            "MBTILES",
            str(destination),
            str(source.path),
            "-progress",
            "-dsco",
            "MINZOOM=0",
            "-dsco",
            f"MAXZOOM={self.vector_max_zoom}",
        ]
        if source.name:
            command.extend(["-dsco", f"NAME={source.name}"])
        if source.type == "csv":
            command.extend(CSV_OPEN_OPTIONS)

        deadline.check()
        try:
            gdal_helpers.run_command_with_progress(
                command,
                on_progress=lambda percent: progress(percent, 100),
                timeout=deadline.remaining(),
            )
        except gdal_helpers.CommandTimeoutError as exc:
            raise errors.ConversionTimeoutError(
                f"Import timed out after {deadline.seconds:g} seconds"
            ) from exc
        except gdal_helpers.CommandError as exc:
            raise errors.ConversionError(f"ogr2ogr failed: {exc}") from exc


def _count_tiles(
    tms: Any,
    bounds: tuple[float, float, float, float],
    zoom: int,
) -> int:
    """Number of tiles ``tms.tiles`` yields for ``bounds`` at one zoom.

    Only the two corner tiles are looked up, so the tile list is never built,
    even for world-wide rasters at deep zooms.
    """
    west, south, east, north = bounds
    upper_left = tms.tile(west + LL_EPSILON, north - LL_EPSILON, zoom)
    lower_right = tms.tile(east - LL_EPSILON, south + LL_EPSILON, zoom)
    columns = lower_right.x - upper_left.x + 1
    rows = lower_right.y - upper_left.y + 1
    return max(0, columns) * max(0, rows)


def _clamp_bounds(
    bounds: tuple[float, float, float, float],
) -> tuple[float, float, float, float]:
    west, south, east, north = bounds
    return (
        max(west, -180.0),
        max(south, -MAX_LATITUDE),
        min(east, 180.0),
        min(north, MAX_LATITUDE),
    )
