"""Tests for the converter registry, deadlines and MBTiles passthrough copy."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tilestore.core import errors
from tilestore.services import converters, normalizer
from tilestore.utils import mbtiles

if TYPE_CHECKING:
    import pathlib


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _source_archive(path: pathlib.Path, tiles: int) -> normalizer.SourceLocator:
    with mbtiles.MBTilesArchive.create(path) as archive:
        archive.write_metadata(
            {
                "name": "Roads",
                "description": "Road network",
                "format": "pbf",
                "minzoom": "0",
                "maxzoom": "not-a-number",
                "bounds": "-10,-5,10,5",
            }
        )
        archive.put_rows((8, x, 0, b"tile") for x in range(tiles))
    return normalizer.SourceLocator("mbtiles", path, "mbtiles")


def test_registry_lookup() -> None:
    converter = converters.MBTilesConverter()
    registry = converters.ConverterRegistry({"mbtiles": converter})
    assert registry.supports("mbtiles")
    assert not registry.supports("tilejson")
    assert registry.get("mbtiles") is converter
    assert registry.protocols == ["mbtiles"]


def test_registry_unknown_protocol() -> None:
    registry = converters.ConverterRegistry()
    with pytest.raises(errors.UnsupportedFormatError, match="tm2z"):
        registry.get("tm2z")


def test_registry_register() -> None:
    registry = converters.ConverterRegistry()
    registry.register("mbtiles", converters.MBTilesConverter())
    assert registry.protocols == ["mbtiles"]


def test_deadline_expiry() -> None:
    clock = FakeClock()
    deadline = converters.Deadline(120, clock=clock)
    assert deadline.remaining() == 120
    deadline.check()
    clock.now += 121
    assert deadline.expired()
    assert deadline.remaining() == 0
    with pytest.raises(errors.ConversionTimeoutError, match="120 seconds"):
        deadline.check()


def test_source_info_as_metadata() -> None:
    info = converters.SourceInfo(name="Roads", maxzoom=14, bounds=(-1, -2, 3, 4))
    assert info.as_metadata() == {
        "name": "Roads",
        "maxzoom": 14,
        "bounds": "-1.000000,-2.000000,3.000000,4.000000",
    }


def test_mbtiles_info(tmp_path: pathlib.Path) -> None:
    """Metadata is read, malformed numbers are dropped."""
    locator = _source_archive(tmp_path / "upload", tiles=1)
    info = converters.MBTilesConverter().info(locator)
    assert info.name == "Roads"
    assert info.description == "Road network"
    assert info.format == "pbf"
    assert info.minzoom == 0
    assert info.maxzoom is None
    assert info.bounds == (-10.0, -5.0, 10.0, 5.0)


def test_mbtiles_info_unreadable(tmp_path: pathlib.Path) -> None:
    path = tmp_path / "broken"
    path.write_bytes(b"SQLite format 3\x00" + b"\xff" * 100)
    locator = normalizer.SourceLocator("mbtiles", path, "mbtiles")
    with pytest.raises(errors.UnreadableFileError):
        converters.MBTilesConverter().info(locator)


def test_mbtiles_copy(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Tiles and metadata are copied in batches with progress reports."""
    monkeypatch.setattr(converters, "COPY_BATCH_SIZE", 2)
    locator = _source_archive(tmp_path / "upload", tiles=5)
    destination = tmp_path / "out" / "roads.mbtiles"
    reports: list[tuple[int, int]] = []

    converters.MBTilesConverter().copy(
        locator,
        destination,
        progress=lambda done, total: reports.append((done, total)),
        deadline=converters.Deadline(60),
    )

    assert reports == [(2, 5), (4, 5), (5, 5)]
    with mbtiles.MBTilesArchive.open(destination) as archive:
        assert archive.tile_count() == 5
        assert archive.metadata()["name"] == "Roads"
        assert list(archive.iter_rows())[0] == (8, 0, 0, b"tile")


def test_mbtiles_copy_empty_archive(tmp_path: pathlib.Path) -> None:
    locator = _source_archive(tmp_path / "upload", tiles=0)
    reports: list[tuple[int, int]] = []
    converters.MBTilesConverter().copy(
        locator,
        tmp_path / "out.mbtiles",
        progress=lambda done, total: reports.append((done, total)),
        deadline=converters.Deadline(60),
    )
    assert reports == [(0, 1)]


def test_mbtiles_copy_respects_deadline(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    monkeypatch.setattr(converters, "COPY_BATCH_SIZE", 1)
    locator = _source_archive(tmp_path / "upload", tiles=3)
    clock = FakeClock()
    deadline = converters.Deadline(10, clock=clock)
    clock.now += 11
    with pytest.raises(errors.ConversionTimeoutError):
        converters.MBTilesConverter().copy(
            locator,
            tmp_path / "out.mbtiles",
            progress=lambda done, total: None,
            deadline=deadline,
        )
