"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging, CORS middleware, the background import scheduler and the
converter registry, includes the tileset and tile routers, and exposes a
health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn tilestore.main:app --reload

    Or created with explicit settings, e.g. in tests:
        >>> from tilestore.core import config
        >>> from tilestore.main import create_app
        >>> app = create_app(config.Settings(database_url="memory://"))
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from tilestore.api import tiles, tilesets
from tilestore.core import config, errors, log
from tilestore.services import converters, geodata, scheduler

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

LOGGER = log.get_logger(__name__)


def build_converters(settings: config.Settings) -> converters.ConverterRegistry:
    """Register the converter for every importable source protocol."""
    return converters.ConverterRegistry(
        {
            "mbtiles": converters.MBTilesConverter(),
            "omnivore": geodata.GeodataConverter(settings),
        }
    )


def create_app(settings: config.Settings | None = None) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Sets up logging, CORS middleware, the import scheduler and converter
    registry (kept on ``app.state``), includes the tileset and tile routers,
    renders service errors as JSON and adds a health check endpoint.

    Args:
        settings: Settings to run with; the cached environment settings are
            used when omitted.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    if settings is None:
        settings = config.get_settings()
    else:
        settings.ensure_directories()
    log.configure_logging(level=settings.log_level, json_logs=settings.json_logs)

    import_scheduler = scheduler.ImportScheduler(settings.import_workers)

    @contextlib.asynccontextmanager
    async def lifespan(_: fastapi.FastAPI) -> AsyncIterator[None]:
        LOGGER.info("tileset server starting, archives in %s", settings.tilesets_dir)
        yield
        import_scheduler.shutdown(wait=True)

    app = fastapi.FastAPI(title="Tileset Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.scheduler = import_scheduler
    app.state.converters = build_converters(settings)

    app.include_router(tilesets.router)
    app.include_router(tiles.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(errors.TilesetError)
    async def tileset_error_handler(  # type: ignore[misc]
        _: fastapi.Request,
        exc: errors.TilesetError,
    ) -> responses.JSONResponse:
        if exc.status_code >= 500:
            LOGGER.error("request failed: %s", exc)
        return responses.JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc)},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
