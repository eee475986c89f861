# src/satellite_node/main.py
"""Main entry point for the satellite node."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from satellite_node import __version__
from satellite_node.api.v1 import satellite_router
from satellite_node.core.logging_config import configure_logging
from satellite_node.core.settings import Settings, get_settings
from satellite_node.runtime import SatelliteRuntime, build_runtime

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    runtime: SatelliteRuntime | None = None,
) -> FastAPI:
    """Build the FastAPI app and its services.

    Raises:
        HubConfigurationError: If background features need the hub and it is
            not configured.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    configure_logging(settings.log_level)
    runtime = runtime or build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Starting satellite %s (%s) v%s",
            settings.satellite_name,
            settings.satellite_type,
            settings.satellite_version,
        )
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(
        title="Satellite Node API",
        description="Authenticated satellite surface and hub synchronization",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.settings = settings

    app.include_router(satellite_router, prefix="/" + settings.api_prefix.strip("/"))

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic information about the satellite."""
        return {
            "name": settings.satellite_name,
            "type": settings.satellite_type,
            "version": settings.satellite_version,
            "api_prefix": settings.api_prefix,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "satellite_node.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
    )
