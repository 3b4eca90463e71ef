"""Stage uploaded files so a converter can open them directly.

Single-file formats pass through untouched. Zipped shapefiles are extracted
into a private scratch directory, and the locator points at the ``.shp``
inside it. The scratch directory belongs to the import attempt that created
it and is removed through NormalizedSource.cleanup().
"""

from __future__ import annotations

import dataclasses
import pathlib
import shutil
import tempfile
import zipfile
from typing import TYPE_CHECKING

from tilestore.core import errors, log

if TYPE_CHECKING:
    from tilestore.services import sniffer

LOGGER = log.get_logger(__name__)

SHAPEFILE_COMPANIONS = (".shx", ".dbf")


@dataclasses.dataclass(frozen=True)
class SourceLocator:
    """Where a converter reads its source from.

    Attributes:
        protocol: Conversion protocol selected by the sniffer.
        path: File the converter should open.
        type: File type reported by the sniffer.
        name: Dataset name found inside the upload, such as the stem of an
            extracted shapefile. Uploads are stored under generated names,
            so a bare upload has none.
    """

    protocol: str
    path: pathlib.Path
    type: str
    name: str | None = None

    def __str__(self) -> str:
        return f"{self.protocol}://{self.path}"


@dataclasses.dataclass
class NormalizedSource:
    """A source locator plus the scratch directory backing it, if any."""

    locator: SourceLocator
    workdir: pathlib.Path | None = None

    def cleanup(self) -> None:
        """Remove the scratch directory. Safe to call more than once."""
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            LOGGER.debug("removed scratch directory %s", self.workdir)
            self.workdir = None


def normalize(
    path: pathlib.Path,
    fileinfo: sniffer.FileInfo,
    work_dir: pathlib.Path,
) -> NormalizedSource:
    """Produce a source the converter can open.

    Args:
        path: The uploaded file.
        fileinfo: Classification returned by the sniffer.
        work_dir: Parent directory for scratch directories.

    Returns:
        NormalizedSource pointing at the original file, or at the extracted
        shapefile for zip uploads.

    Raises:
        ExtractionError: If a zip upload is corrupt, unsafe, or lacks a
            complete shapefile. No scratch directory is left behind.
    """
    if fileinfo.type != "zip":
        return NormalizedSource(
            SourceLocator(fileinfo.protocol, path, fileinfo.type)
        )

    work_dir.mkdir(parents=True, exist_ok=True)
    workdir = pathlib.Path(tempfile.mkdtemp(prefix="shp-", dir=work_dir))
    try:
        shapefile = _extract_shapefile(path, workdir)
    except BaseException:
        shutil.rmtree(workdir, ignore_errors=True)
        raise
    LOGGER.info("extracted %s to %s", path.name, shapefile)
    return NormalizedSource(
        SourceLocator(fileinfo.protocol, shapefile, "shp", name=shapefile.stem),
        workdir=workdir,
    )


def _extract_shapefile(path: pathlib.Path, workdir: pathlib.Path) -> pathlib.Path:
    root = workdir.resolve()
    try:
        with zipfile.ZipFile(path) as archive:
            for member in archive.infolist():
                target = (root / member.filename).resolve()
                if not target.is_relative_to(root):
                    raise errors.ExtractionError(
                        f"Zip member escapes archive: {member.filename}"
                    )
            archive.extractall(root)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as exc:
        raise errors.ExtractionError(f"Cannot extract zip upload: {exc}") from exc

    candidates = sorted(
        candidate
        for candidate in root.rglob("*")
        if candidate.suffix.lower() == ".shp"
        and "__MACOSX" not in candidate.parts
    )
    if not candidates:
        raise errors.ExtractionError("Zip upload does not contain a .shp file")

    shapefile = candidates[0]
    for suffix in SHAPEFILE_COMPANIONS:
        if not _sibling(shapefile, suffix).exists():
            raise errors.ExtractionError(
                f"Shapefile {shapefile.name} is missing its {suffix} file"
            )
    return shapefile


def _sibling(shapefile: pathlib.Path, suffix: str) -> pathlib.Path:
    """Find a companion file, accepting either letter case for the suffix."""
    for candidate in (suffix, suffix.upper()):
        sibling = shapefile.with_suffix(candidate)
        if sibling.exists():
            return sibling
    return shapefile.with_suffix(suffix)
