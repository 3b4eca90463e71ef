"""Tests for import orchestration.

A fake converter registered for the ``omnivore`` protocol stands in for the
GDAL-backed one, so the full attempt lifecycle (record resolution,
sniffing, normalization, background conversion, retries, timeouts and
cleanup) runs against real files in a temporary directory.

See Also:
    - backend/tilestore/services/importer.py for implementation details.
"""

from __future__ import annotations

import asyncio
import json
import zipfile
from typing import TYPE_CHECKING

import pytest

from tilestore.core import config, errors
from tilestore.db import database
from tilestore.db import models as db_models
from tilestore.services import converters, geodata, importer, scheduler, tiles
from tilestore.utils import gdal_helpers, mbtiles

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterator

    from tilestore.services import normalizer


class FakeConverter:
    """Writes a one-tile archive, optionally failing the first attempts."""

    def __init__(
        self,
        *,
        name: str | None = "Fake source",
        failures: int = 0,
        error: Exception | None = None,
        info_error: Exception | None = None,
    ) -> None:
        self.name = name
        self.failures = failures
        self.error = error or errors.ConversionError("copy failed")
        self.info_error = info_error
        self.calls = 0
        self.sources: list[normalizer.SourceLocator] = []

    def info(self, source: normalizer.SourceLocator) -> converters.SourceInfo:
        if self.info_error is not None:
            raise self.info_error
        return converters.SourceInfo(name=self.name, description="From source")

    def copy(
        self,
        source: normalizer.SourceLocator,
        destination: pathlib.Path,
        *,
        progress: Callable[[int, int], None],
        deadline: converters.Deadline,
    ) -> None:
        self.calls += 1
        self.sources.append(source)
        assert source.path.exists()
        with mbtiles.MBTilesArchive.create(destination) as archive:
            archive.write_metadata({"name": "fake", "format": "png"})
            archive.put_tile(0, 0, 0, b"new")
            if self.calls <= self.failures:
                raise self.error
        progress(1, 1)


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    settings = config.Settings(
        database_url="memory://",
        storage_dir=tmp_path / "uploads",
        tilesets_dir=tmp_path / "tilesets",
        work_dir=tmp_path / "work",
        progress_interval_seconds=0,
    )
    settings.ensure_directories()
    return settings


@pytest.fixture
def import_scheduler() -> Iterator[scheduler.ImportScheduler]:
    import_scheduler = scheduler.ImportScheduler(max_workers=2)
    yield import_scheduler
    import_scheduler.shutdown()


@pytest.fixture
def repo() -> database.InMemoryTilesetRepository:
    return database.InMemoryTilesetRepository()


def _importer(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
    converter: FakeConverter,
) -> importer.TilesetImporter:
    registry = converters.ConverterRegistry({"omnivore": converter})
    return importer.TilesetImporter(repo, registry, import_scheduler, settings)


def _geojson_upload(settings: config.Settings, name: str = "upload") -> pathlib.Path:
    path = settings.storage_dir / name
    path.write_text(json.dumps({"type": "FeatureCollection", "features": []}))
    return path


def _import(
    tileset_importer: importer.TilesetImporter,
    owner: str,
    tileset_id: str | None,
    upload: pathlib.Path,
    filename: str = "parks.geojson",
    **kwargs: str | None,
) -> db_models.Tileset:
    tileset, future = asyncio.run(
        tileset_importer.submit(owner, tileset_id, upload, filename, **kwargs)
    )
    future.result(timeout=10)
    return tileset


def test_import_new_tileset(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """A new record is answered reset and finishes complete with an archive."""
    converter = FakeConverter()
    tileset_importer = _importer(repo, import_scheduler, settings, converter)
    upload = _geojson_upload(settings)

    tileset = _import(tileset_importer, "acme", None, upload)

    assert tileset.tileset_id
    assert tileset.complete is False
    assert tileset.progress == 0
    assert tileset.name == "Fake source"
    assert tileset.description == "From source"

    stored = repo.find("acme", tileset.tileset_id)
    assert stored is not None
    assert stored.complete is True
    assert stored.progress == 100
    assert stored.error is None

    archive = tiles.archive_path(settings.tilesets_dir, "acme", tileset.tileset_id)
    assert archive.is_file()
    assert not archive.with_name(archive.name + ".partial").exists()
    assert not upload.exists()
    assert not import_scheduler.is_active(("acme", tileset.tileset_id))


def test_import_name_defaults(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """Explicit name wins, then source name, then the upload's file name."""
    tileset_importer = _importer(
        repo, import_scheduler, settings, FakeConverter(name=None)
    )
    by_filename = _import(
        tileset_importer, "acme", None, _geojson_upload(settings, "a")
    )
    explicit = _import(
        tileset_importer,
        "acme",
        None,
        _geojson_upload(settings, "b"),
        name="Parks",
        description="City parks",
    )
    assert by_filename.name == "parks"
    assert explicit.name == "Parks"
    assert explicit.description == "City parks"


def test_geodata_upload_named_after_uploaded_file(
    monkeypatch: pytest.MonkeyPatch,
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """Stored upload names never leak into the tileset name."""
    monkeypatch.setattr(gdal_helpers, "run_command", lambda *a, **k: "")
    registry = converters.ConverterRegistry(
        {"omnivore": geodata.GeodataConverter(settings)}
    )
    tileset_importer = importer.TilesetImporter(
        repo, registry, import_scheduler, settings
    )
    upload = _geojson_upload(settings, "3f2b9c1e-aaaa-bbbb-cccc-0123456789ab.geojson")

    tileset, attempt = tileset_importer.prepare("acme", None, upload, "parks.geojson")
    attempt.cleanup()
    import_scheduler.release(attempt.key)

    assert tileset.name == "parks"


def test_reimport_resets_record_and_keeps_name(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    repo.insert(
        db_models.Tileset(
            owner="acme",
            tileset_id="parks",
            name="Renamed",
            complete=True,
            progress=40,
            error="old failure",
        )
    )
    tileset_importer = _importer(repo, import_scheduler, settings, FakeConverter())

    tileset, future = asyncio.run(
        tileset_importer.submit("acme", "parks", _geojson_upload(settings), "x.json")
    )
    assert (tileset.complete, tileset.progress, tileset.error) == (False, 0, None)
    assert tileset.name == "Renamed"
    future.result(timeout=10)

    stored = repo.find("acme", "parks")
    assert stored is not None
    assert stored.complete is True
    assert stored.error is None


def test_reimport_unknown_tileset(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    tileset_importer = _importer(repo, import_scheduler, settings, FakeConverter())
    upload = _geojson_upload(settings)
    with pytest.raises(errors.NotFoundError):
        tileset_importer.prepare("acme", "missing", upload, "x.geojson")
    assert not upload.exists()
    assert repo.list("acme") == []


def test_unsupported_format_rejected(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """Recognised but unhandled formats leave no record and no upload."""
    converter = FakeConverter()
    tileset_importer = _importer(repo, import_scheduler, settings, converter)
    upload = settings.storage_dir / "tiles.json"
    upload.write_text(json.dumps({"tilejson": "2.2.0", "tiles": []}))

    with pytest.raises(errors.UnsupportedFormatError, match="tilejson"):
        tileset_importer.prepare("acme", None, upload, "tiles.json")

    assert repo.list("acme") == []
    assert not upload.exists()
    assert converter.calls == 0


def test_unreadable_upload_rejected(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    tileset_importer = _importer(repo, import_scheduler, settings, FakeConverter())
    upload = settings.storage_dir / "noise"
    upload.write_bytes(b"\x00\x01 garbage")
    with pytest.raises(errors.UnreadableFileError):
        tileset_importer.prepare("acme", None, upload, "noise.bin")
    assert repo.list("acme") == []
    assert not upload.exists()


def test_source_info_failure_rejected(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """A source the converter cannot describe fails before the response."""
    converter = FakeConverter(info_error=errors.UnreadableFileError("bad source"))
    tileset_importer = _importer(repo, import_scheduler, settings, converter)
    with pytest.raises(errors.UnreadableFileError, match="bad source"):
        tileset_importer.prepare("acme", None, _geojson_upload(settings), "x")
    assert repo.list("acme") == []


def test_conversion_failure_recorded(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """After the last attempt fails the error lands on the record."""
    converter = FakeConverter(failures=5)
    tileset_importer = _importer(repo, import_scheduler, settings, converter)
    tileset = _import(tileset_importer, "acme", None, _geojson_upload(settings))

    assert converter.calls == settings.convert_attempts
    stored = repo.find("acme", tileset.tileset_id or "")
    assert stored is not None
    assert stored.complete is True
    assert stored.error == "copy failed"
    archive = tiles.archive_path(settings.tilesets_dir, "acme", stored.tileset_id or "")
    assert not archive.exists()
    assert not archive.with_name(archive.name + ".partial").exists()


def test_conversion_retried_once(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    converter = FakeConverter(failures=1)
    tileset_importer = _importer(repo, import_scheduler, settings, converter)
    tileset = _import(tileset_importer, "acme", None, _geojson_upload(settings))

    assert converter.calls == 2
    stored = repo.find("acme", tileset.tileset_id or "")
    assert stored is not None
    assert stored.error is None
    assert stored.progress == 100


def test_timeout_not_retried(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    converter = FakeConverter(
        failures=5,
        error=errors.ConversionTimeoutError("Import timed out after 120 seconds"),
    )
    tileset_importer = _importer(repo, import_scheduler, settings, converter)
    tileset = _import(tileset_importer, "acme", None, _geojson_upload(settings))

    assert converter.calls == 1
    stored = repo.find("acme", tileset.tileset_id or "")
    assert stored is not None
    assert stored.complete is True
    assert "timed out" in (stored.error or "")


def test_failed_reimport_keeps_previous_archive(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """Tiles of the last good import stay served while a new one fails."""
    repo.insert(db_models.Tileset(owner="acme", tileset_id="parks", complete=True))
    archive = tiles.archive_path(settings.tilesets_dir, "acme", "parks")
    with mbtiles.MBTilesArchive.create(archive) as existing:
        existing.put_tile(0, 0, 0, b"old")

    tileset_importer = _importer(
        repo, import_scheduler, settings, FakeConverter(failures=5)
    )
    _import(tileset_importer, "acme", "parks", _geojson_upload(settings))

    with mbtiles.MBTilesArchive.open(archive) as current:
        assert current.get_tile(0, 0, 0) == b"old"


def test_same_tileset_import_rejected(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """A second import of a tileset with one in flight is refused."""
    repo.insert(db_models.Tileset(owner="acme", tileset_id="parks", name="Parks"))
    import_scheduler.claim(("acme", "parks"))
    tileset_importer = _importer(repo, import_scheduler, settings, FakeConverter())
    upload = _geojson_upload(settings)

    with pytest.raises(errors.ImportInProgressError):
        tileset_importer.prepare("acme", "parks", upload, "x.geojson")

    assert repo.find("acme", "parks") is not None
    assert not upload.exists()
    assert import_scheduler.is_active(("acme", "parks"))


def test_different_tilesets_import_concurrently(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    tileset_importer = _importer(repo, import_scheduler, settings, FakeConverter())
    prepared = [
        tileset_importer.prepare(
            "acme", None, _geojson_upload(settings, name), f"{name}.geojson"
        )
        for name in ("a", "b")
    ]
    futures = [tileset_importer.start(attempt) for _, attempt in prepared]
    for future in futures:
        future.result(timeout=10)
    assert all(t.complete and t.error is None for t in repo.list("acme"))
    assert len(repo.list("acme")) == 2


def test_zip_scratch_directory_removed(
    repo: database.InMemoryTilesetRepository,
    import_scheduler: scheduler.ImportScheduler,
    settings: config.Settings,
) -> None:
    """The converter reads the extracted .shp, which is gone afterwards."""
    upload = settings.storage_dir / "roads.zip"
    with zipfile.ZipFile(upload, "w") as archive:
        for suffix in ("shp", "shx", "dbf"):
            archive.writestr(f"roads.{suffix}", suffix.encode())
    converter = FakeConverter()
    tileset_importer = _importer(repo, import_scheduler, settings, converter)

    _import(tileset_importer, "acme", None, upload, "roads.zip")

    assert converter.sources[0].type == "shp"
    assert converter.sources[0].path.name == "roads.shp"
    assert list(settings.work_dir.iterdir()) == []
    assert not upload.exists()


def test_start_after_shutdown_records_error(
    repo: database.InMemoryTilesetRepository,
    settings: config.Settings,
) -> None:
    stopped = scheduler.ImportScheduler(max_workers=1)
    tileset_importer = _importer(repo, stopped, settings, FakeConverter())
    tileset, attempt = tileset_importer.prepare(
        "acme", None, _geojson_upload(settings), "x.geojson"
    )
    stopped.shutdown()

    with pytest.raises(RuntimeError):
        tileset_importer.start(attempt)

    stored = repo.find("acme", tileset.tileset_id or "")
    assert stored is not None
    assert stored.complete is True
    assert stored.error
    assert not stopped.is_active(attempt.key)


def test_attempt_rejects_illegal_transition(tmp_path: pathlib.Path) -> None:
    attempt = importer.ImportAttempt("acme", "parks", tmp_path / "u", "u")
    with pytest.raises(RuntimeError, match="pending -> done"):
        attempt.advance(importer.ImportState.DONE)
    attempt.advance(importer.ImportState.SNIFFING)
    attempt.advance(importer.ImportState.CONVERTING)
    attempt.advance(importer.ImportState.DONE)
    assert attempt.state in importer.TERMINAL_STATES
