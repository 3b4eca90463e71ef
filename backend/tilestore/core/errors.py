"""Error taxonomy for tileset import and serving.

Every error carries the HTTP status it maps to when raised while a request
is still being answered. Errors raised after the response has been sent
(during background conversion) are recorded on the tileset instead.
"""


class TilesetError(Exception):
    """Base class for all tileset service errors."""

    status_code = 500


class NotFoundError(TilesetError):
    """Unknown owner, tileset, archive or tile."""

    status_code = 404


class UnsupportedFormatError(TilesetError):
    """The upload was recognised but no converter handles its protocol."""

    status_code = 400


class UnreadableFileError(TilesetError):
    """The upload cannot be opened or classified."""

    status_code = 400


class ExtractionError(TilesetError):
    """A container upload (zipped shapefile) is corrupt or incomplete."""

    status_code = 400


class ImportInProgressError(TilesetError):
    """Another import attempt already owns the tileset."""

    status_code = 409


class ConversionError(TilesetError):
    """Copying the source into the tile archive failed."""


class ConversionTimeoutError(ConversionError):
    """The conversion phase ran past its overall deadline."""
