"""Import orchestration for uploaded geodata.

An import attempt moves through an explicit state machine:

    PENDING -> SNIFFING -> CONVERTING -> DONE
                  |             |
                  |             +-> FAILED_CONVERT
                  +-> FAILED_SNIFF
                  +-> UNSUPPORTED

Everything up to and including the record reset (resolve the record,
classify, normalize, read source info, persist defaults) happens while the
HTTP request is still open, so failures there become HTTP errors. The
conversion itself runs on the ImportScheduler after the response has been
sent; its outcome is written to the tileset record (``complete``,
``progress``, ``error``) and never raised to a caller.

Temporary files (the upload, extracted shapefiles, the staging archive)
belong to the attempt and are removed on every exit path.

Example:
    Inside an async request handler:
        >>> importer = TilesetImporter(repo, registry, scheduler, settings)
        >>> tileset, future = await importer.submit(
        ...     "acme", None, upload_path, "roads.zip"
        ... )
        >>> tileset.complete, tileset.progress
        (False, 0)
"""

from __future__ import annotations

import dataclasses
import enum
import os
import pathlib
from typing import TYPE_CHECKING

from starlette import concurrency

from tilestore.core import errors, log
from tilestore.db import models as db_models
from tilestore.services import converters, normalizer, progress, sniffer, tiles

if TYPE_CHECKING:
    import concurrent.futures
    from collections.abc import Mapping

    from tilestore.core import config
    from tilestore.db import database
    from tilestore.services import scheduler

LOGGER = log.get_logger(__name__)


class ImportState(enum.Enum):
    PENDING = "pending"
    SNIFFING = "sniffing"
    CONVERTING = "converting"
    DONE = "done"
    FAILED_SNIFF = "failed_sniff"
    FAILED_CONVERT = "failed_convert"
    UNSUPPORTED = "unsupported"


TRANSITIONS: dict[ImportState, frozenset[ImportState]] = {
    ImportState.PENDING: frozenset({ImportState.SNIFFING}),
    ImportState.SNIFFING: frozenset(
        {
            ImportState.CONVERTING,
            ImportState.FAILED_SNIFF,
            ImportState.UNSUPPORTED,
        }
    ),
    ImportState.CONVERTING: frozenset(
        {ImportState.DONE, ImportState.FAILED_CONVERT}
    ),
}

TERMINAL_STATES = frozenset(
    {
        ImportState.DONE,
        ImportState.FAILED_SNIFF,
        ImportState.FAILED_CONVERT,
        ImportState.UNSUPPORTED,
    }
)


@dataclasses.dataclass
class ImportAttempt:
    """One import attempt and the typed results of its phases.

    Attributes:
        owner: Owner of the target tileset.
        tileset_id: Target tileset id (assigned during PENDING).
        upload_path: Uploaded file on disk; removed when the attempt ends.
        filename: Client-side name of the upload.
        state: Current state of the attempt.
        created: Whether PENDING created the record for this attempt.
        fileinfo: Sniffer classification.
        source: Normalized source handed to the converter.
        info: Descriptive source info reported by the converter.
        error: Failure detail once the attempt failed.
    """

    owner: str
    tileset_id: str | None
    upload_path: pathlib.Path
    filename: str
    state: ImportState = ImportState.PENDING
    created: bool = False
    fileinfo: sniffer.FileInfo | None = None
    source: normalizer.NormalizedSource | None = None
    info: converters.SourceInfo | None = None
    error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        if self.tileset_id is None:
            raise RuntimeError("Import attempt has no tileset id yet")
        return (self.owner, self.tileset_id)

    def advance(self, state: ImportState) -> None:
        """Move to ``state``, refusing transitions the machine does not allow."""
        allowed = TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise RuntimeError(
                f"Illegal import transition {self.state.value} -> {state.value}"
            )
        LOGGER.debug(
            "import %s/%s: %s -> %s",
            self.owner,
            self.tileset_id,
            self.state.value,
            state.value,
        )
        self.state = state

    def cleanup(self) -> None:
        """Remove the upload and any normalization scratch directory."""
        if self.source is not None:
            self.source.cleanup()
        try:
            self.upload_path.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("could not remove upload %s", self.upload_path)


class TilesetImporter:
    """Coordinates sniffing, normalizing and converting one upload.

    Args:
        repo: Record store for tileset metadata.
        registry: Converters available for each sniffed protocol.
        import_scheduler: Background executor and in-flight registry.
        settings: Application settings (directories, retry and timeout
            budgets, progress throttling).
    """

    def __init__(
        self,
        repo: database.TilesetRepositoryProtocol,
        registry: converters.ConverterRegistry,
        import_scheduler: scheduler.ImportScheduler,
        settings: config.Settings,
    ) -> None:
        self.repo = repo
        self.registry = registry
        self.scheduler = import_scheduler
        self.settings = settings

    async def submit(
        self,
        owner: str,
        tileset_id: str | None,
        upload_path: pathlib.Path,
        filename: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> tuple[db_models.Tileset, concurrent.futures.Future[None]]:
        """Prepare an import while the request is open, then detach it.

        Returns:
            The reset tileset record (as sent to the caller) and the future
            of the background conversion.

        Raises:
            NotFoundError: ``tileset_id`` was given but does not exist.
            ImportInProgressError: Another attempt owns the tileset.
            UnsupportedFormatError: No converter handles the upload.
            UnreadableFileError, ExtractionError: The upload is malformed.
        """
        tileset, attempt = await concurrency.run_in_threadpool(
            self.prepare,
            owner,
            tileset_id,
            upload_path,
            filename,
            name=name,
            description=description,
        )
        return tileset, self.start(attempt)

    def prepare(
        self,
        owner: str,
        tileset_id: str | None,
        upload_path: pathlib.Path,
        filename: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> tuple[db_models.Tileset, ImportAttempt]:
        """Run every step that precedes the HTTP response.

        On failure the upload and scratch files are removed, the tileset's
        slot is released and a record created for this attempt is deleted
        again before the error propagates.
        """
        attempt = ImportAttempt(owner, tileset_id, upload_path, filename)
        try:
            tileset = self._resolve(attempt)
        except BaseException:
            attempt.cleanup()
            raise

        try:
            attempt.advance(ImportState.SNIFFING)
            attempt.fileinfo = sniffer.classify(upload_path)
            if not self.registry.supports(attempt.fileinfo.protocol):
                attempt.advance(ImportState.UNSUPPORTED)
                raise errors.UnsupportedFormatError(
                    f"Unsupported file format: {attempt.fileinfo.type}"
                )
            attempt.source = normalizer.normalize(
                upload_path,
                attempt.fileinfo,
                self.settings.work_dir,
            )
            converter = self.registry.get(attempt.fileinfo.protocol)
            attempt.info = converter.info(attempt.source.locator)
            tileset = self._reset_record(
                tileset,
                attempt,
                name=name,
                description=description,
            )
        except BaseException as exc:
            if attempt.state is ImportState.SNIFFING:
                attempt.advance(ImportState.FAILED_SNIFF)
            attempt.error = str(exc)
            self._abandon(attempt)
            LOGGER.info(
                "import %s/%s rejected (%s): %s",
                owner,
                attempt.tileset_id,
                attempt.state.value,
                exc,
            )
            raise
        return tileset, attempt

    def start(self, attempt: ImportAttempt) -> concurrent.futures.Future[None]:
        """Hand a prepared attempt over to the background scheduler."""
        try:
            return self.scheduler.submit(attempt.key, self.run, attempt)
        except RuntimeError as exc:
            # executor already shut down
            attempt.cleanup()
            self.scheduler.release(attempt.key)
            self._write(attempt, {"complete": True, "error": str(exc)})
            raise

    def run(self, attempt: ImportAttempt) -> None:
        """Convert the source into the tileset's archive and finalize.

        Runs on a scheduler thread. Every failure ends up in the tileset's
        ``error`` field; the terminal write happens exactly once.
        """
        owner, tileset_id = attempt.key
        attempt.advance(ImportState.CONVERTING)
        reporter = progress.ProgressReporter(
            lambda fields: self._write(attempt, fields),
            interval=self.settings.progress_interval_seconds,
        )
        destination = tiles.archive_path(
            self.settings.tilesets_dir,
            owner,
            tileset_id,
        )
        staging = destination.with_name(destination.name + ".partial")
        try:
            self._convert(attempt, staging, reporter)
            os.replace(staging, destination)
        except errors.ConversionError as exc:
            attempt.error = str(exc)
            LOGGER.warning("import %s/%s failed: %s", owner, tileset_id, exc)
        except Exception as exc:
            attempt.error = str(exc) or exc.__class__.__name__
            LOGGER.exception("import %s/%s failed", owner, tileset_id)
        finally:
            attempt.cleanup()
            staging.unlink(missing_ok=True)

        if attempt.error is None:
            attempt.advance(ImportState.DONE)
            LOGGER.info("import %s/%s complete", owner, tileset_id)
        else:
            attempt.advance(ImportState.FAILED_CONVERT)
        reporter.finish(attempt.error)

    def _resolve(self, attempt: ImportAttempt) -> db_models.Tileset:
        """PENDING: load or create the record and claim its import slot."""
        if attempt.tileset_id is None:
            tileset = self.repo.insert(db_models.Tileset(owner=attempt.owner))
            attempt.tileset_id = tileset.tileset_id
            attempt.created = True
        else:
            found = self.repo.find(attempt.owner, attempt.tileset_id)
            if found is None:
                raise errors.NotFoundError(
                    f"Tileset {attempt.owner}/{attempt.tileset_id} not found"
                )
            tileset = found

        try:
            self.scheduler.claim(attempt.key)
        except errors.ImportInProgressError:
            if attempt.created:
                self.repo.remove(*attempt.key)
            raise
        return tileset

    def _reset_record(
        self,
        tileset: db_models.Tileset,
        attempt: ImportAttempt,
        *,
        name: str | None,
        description: str | None,
    ) -> db_models.Tileset:
        info = attempt.info or converters.SourceInfo()
        fields = {
            "name": name
            or tileset.name
            or info.name
            or pathlib.PurePath(attempt.filename).stem,
            "description": description or tileset.description or info.description,
            "complete": False,
            "progress": 0,
            "error": None,
        }
        updated = self.repo.update(*attempt.key, fields)
        if updated is None:
            raise errors.NotFoundError(
                f"Tileset {attempt.owner}/{attempt.tileset_id} not found"
            )
        return updated

    def _convert(
        self,
        attempt: ImportAttempt,
        staging: pathlib.Path,
        reporter: progress.ProgressReporter,
    ) -> None:
        """CONVERTING: copy with bounded retries under one overall deadline."""
        if attempt.source is None or attempt.fileinfo is None:
            raise RuntimeError("Import attempt was not prepared")
        converter = self.registry.get(attempt.fileinfo.protocol)
        deadline = converters.Deadline(self.settings.convert_timeout_seconds)
        staging.parent.mkdir(parents=True, exist_ok=True)
        attempts = max(1, self.settings.convert_attempts)
        for number in range(1, attempts + 1):
            staging.unlink(missing_ok=True)
            try:
                deadline.check()
                converter.copy(
                    attempt.source.locator,
                    staging,
                    progress=reporter.update,
                    deadline=deadline,
                )
            except errors.ConversionTimeoutError:
                raise
            except errors.ConversionError as exc:
                if number == attempts:
                    raise
                LOGGER.warning(
                    "import %s/%s attempt %d/%d failed, retrying: %s",
                    attempt.owner,
                    attempt.tileset_id,
                    number,
                    attempts,
                    exc,
                )
            else:
                return

    def _write(
        self,
        attempt: ImportAttempt,
        fields: Mapping[str, object],
    ) -> None:
        updated = self.repo.update(*attempt.key, fields)
        if updated is None:
            LOGGER.warning(
                "tileset %s/%s vanished during import",
                attempt.owner,
                attempt.tileset_id,
            )

    def _abandon(self, attempt: ImportAttempt) -> None:
        attempt.cleanup()
        if attempt.tileset_id is None:
            return
        self.scheduler.release(attempt.key)
        if attempt.created:
            self.repo.remove(*attempt.key)
