"""Tileset catalogue and import API endpoints.

This module provides REST endpoints to list, describe, import, rename and
delete tilesets. Importing accepts a multipart upload, classifies and
stages it while the request is open, answers with the reset tileset record
(``complete: false``, ``progress: 0``) and continues the conversion in the
background. Clients poll the tileset endpoint until ``complete`` turns true.

Example:
    Upload a zipped shapefile as a new tileset:
        >>> response = client.post(
        ...     "/acme/tilesets",
        ...     files={"file": ("roads.zip", open("roads.zip", "rb"))},
        ... )
        >>> tileset_id = response.json()["tilesetId"]

    Poll until the import is finished:
        >>> client.get(f"/acme/tilesets/{tileset_id}").json()["complete"]
        True

    Re-import into the existing tileset:
        >>> client.post(
        ...     f"/acme/tilesets/{tileset_id}",
        ...     files={"file": ("roads.zip", open("roads.zip", "rb"))},
        ... )
"""

from __future__ import annotations

import pathlib
import re
import shutil
import tempfile
import uuid
from typing import Any

import fastapi
import pydantic
from fastapi import responses
from starlette import concurrency

from tilestore.core import config
from tilestore.db import database
from tilestore.services import importer, tiles

router = fastapi.APIRouter(tags=["tilesets"])

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class TilesetUpdate(pydantic.BaseModel):
    """Editable tileset metadata."""

    name: str | None = None
    description: str | None = None


def _get_settings(request: fastapi.Request) -> config.Settings:
    """Settings the application was created with."""
    return request.app.state.settings


def _get_repo(
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
) -> database.TilesetRepositoryProtocol:
    """Resolve the tileset repository dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        TilesetRepositoryProtocol implementation for the configured
        database URL.
    """
    return database.get_tileset_repository(settings)


def _get_importer(
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
    repo: database.TilesetRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> importer.TilesetImporter:
    """Build an importer over the app's converters and scheduler."""
    return importer.TilesetImporter(
        repo,
        request.app.state.converters,
        request.app.state.scheduler,
        settings,
    )


def _validate_identifier(value: str, what: str) -> str:
    """Only allow identifiers that are safe as path components.

    Raises:
        HTTPException: If the value contains anything but letters, digits,
            underscores and hyphens.
    """
    if not IDENTIFIER_PATTERN.match(value):
        raise fastapi.HTTPException(
            status_code=400,
            detail=f"Invalid {what}",
        )

    return value


def _save_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded file to disk with size validation.

    The file is stored under a random name so concurrent uploads with the
    same client-side name never collide.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    storage_dir.mkdir(parents=True, exist_ok=True)
    suffix = pathlib.PurePath(file.filename or "").suffix
    target_path = storage_dir / f"{uuid.uuid4()}{suffix}"
    with tempfile.NamedTemporaryFile(delete=False, dir=storage_dir) as tmp:
        size = 0
        for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
            size += len(chunk)
            if size > max_size:
                tmp.close()
                pathlib.Path(tmp.name).unlink(missing_ok=True)
                raise fastapi.HTTPException(
                    status_code=413,
                    detail="Upload too large",
                )

            tmp.write(chunk)

        tmp.flush()

    shutil.move(tmp.name, target_path)

    return target_path


def _describe(
    request: fastapi.Request,
    settings: config.Settings,
    owner: str,
    tileset_id: str,
    record: dict[str, Any],
) -> dict[str, Any]:
    """Merge the record over its archive info, when an archive exists."""
    path = tiles.archive_path(settings.tilesets_dir, owner, tileset_id)
    if not path.is_file():
        return record
    info = tiles.read_info(path)
    base_url = str(request.url.replace(query="", fragment=""))
    info["tiles"] = [tiles.tile_url_template(base_url, info["format"])]
    info["scheme"] = "xyz"
    return {**info, **record}


@router.get("/{owner}/tilesets")
async def list_tilesets(
    owner: str,
    repo: database.TilesetRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> list[dict[str, Any]]:
    """List an owner's tilesets, newest first."""
    _validate_identifier(owner, "owner")
    return [tileset.to_json() for tileset in repo.list(owner)]


@router.get("/{owner}/tilesets/{tileset_id}")
async def get_tileset(
    owner: str,
    tileset_id: str,
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
    repo: database.TilesetRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Describe a tileset.

    Returns the tileset record merged over its archive metadata, with a
    ``tiles`` URL template built from this request's own URL and
    ``scheme: "xyz"``. While no archive exists yet (first import still
    running or failed) only the record is returned, so clients can follow
    ``progress`` and ``error``.

    Raises:
        HTTPException: If the tileset is not found (404 status code).

    Example:
        >>> client.get("/acme/tilesets/roads").json()["tiles"]
        ['http://testserver/acme/tilesets/roads/{z}/{x}/{y}.pbf']
    """
    _validate_identifier(owner, "owner")
    _validate_identifier(tileset_id, "tileset id")
    tileset = repo.find(owner, tileset_id)
    if tileset is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Tileset not found",
        )

    return _describe(request, settings, owner, tileset_id, tileset.to_json())


async def _import(
    owner: str,
    tileset_id: str | None,
    file: fastapi.UploadFile,
    name: str | None,
    description: str | None,
    settings: config.Settings,
    tileset_importer: importer.TilesetImporter,
) -> dict[str, Any]:
    _validate_identifier(owner, "owner")
    if tileset_id is not None:
        _validate_identifier(tileset_id, "tileset id")
    upload_path = await concurrency.run_in_threadpool(
        _save_upload,
        file,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    tileset, _ = await tileset_importer.submit(
        owner,
        tileset_id,
        upload_path,
        file.filename or upload_path.name,
        name=name,
        description=description,
    )
    return tileset.to_json()


@router.post("/{owner}/tilesets")
async def create_tileset(
    owner: str,
    file: fastapi.UploadFile,
    name: str | None = fastapi.Form(None),  # noqa: B008
    description: str | None = fastapi.Form(None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
    tileset_importer: importer.TilesetImporter = fastapi.Depends(_get_importer),  # noqa: B008
) -> dict[str, Any]:
    """Create a tileset from an uploaded file.

    The response is sent as soon as the upload is classified and the record
    is saved; the tiles are imported in the background.

    Raises:
        HTTPException: 400 for unsupported or malformed uploads, 413 for
            uploads over the size limit.

    Example:
        >>> response = client.post(
        ...     "/acme/tilesets",
        ...     files={"file": ("dem.tif", open("dem.tif", "rb"))},
        ...     data={"name": "Elevation"},
        ... )
        >>> response.json()["complete"]
        False
    """
    return await _import(
        owner, None, file, name, description, settings, tileset_importer
    )


@router.post("/{owner}/tilesets/{tileset_id}")
async def import_tileset(
    owner: str,
    tileset_id: str,
    file: fastapi.UploadFile,
    name: str | None = fastapi.Form(None),  # noqa: B008
    description: str | None = fastapi.Form(None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
    tileset_importer: importer.TilesetImporter = fastapi.Depends(_get_importer),  # noqa: B008
) -> dict[str, Any]:
    """Re-import an existing tileset from an uploaded file.

    Raises:
        HTTPException: 404 if the tileset does not exist, 409 while another
            import of it is running, 400 for unsupported or malformed
            uploads.
    """
    return await _import(
        owner, tileset_id, file, name, description, settings, tileset_importer
    )


@router.patch("/{owner}/tilesets/{tileset_id}")
async def update_tileset(
    owner: str,
    tileset_id: str,
    update: TilesetUpdate,
    repo: database.TilesetRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Change a tileset's name and/or description."""
    _validate_identifier(owner, "owner")
    _validate_identifier(tileset_id, "tileset id")
    tileset = repo.update(owner, tileset_id, update.model_dump(exclude_unset=True))
    if tileset is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Tileset not found",
        )

    return tileset.to_json()


@router.delete("/{owner}/tilesets/{tileset_id}", status_code=204)
async def delete_tileset(
    owner: str,
    tileset_id: str,
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(_get_settings),  # noqa: B008
    repo: database.TilesetRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> responses.Response:
    """Delete a tileset record and its archive.

    Raises:
        HTTPException: 404 if the tileset does not exist.
        ImportInProgressError: While an import of the tileset is running.
    """
    _validate_identifier(owner, "owner")
    _validate_identifier(tileset_id, "tileset id")
    scheduler = request.app.state.scheduler
    key = (owner, tileset_id)
    # holding the slot keeps a re-import from starting mid-delete
    scheduler.claim(key)
    try:
        tileset = repo.remove(owner, tileset_id)
        if tileset is None:
            raise fastapi.HTTPException(
                status_code=404,
                detail="Tileset not found",
            )
        tiles.remove_archive(
            tiles.archive_path(settings.tilesets_dir, owner, tileset_id)
        )
    finally:
        scheduler.release(key)
    return responses.Response(status_code=204)
