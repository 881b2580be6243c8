"""FastAPI application with lifespan and router mounting."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from remindflow.api.routes import admin, health
from remindflow.core.config import AppSettings
from remindflow.core.exceptions import (
    ConfigurationError,
    ItemNotFoundError,
    StateConflict,
)
from remindflow.core.logging import configure_logging
from remindflow.engine.context import ReminderEngine, build_engine


def create_app(engine: ReminderEngine | None = None) -> FastAPI:
    """Create the application around an engine.

    Without an explicit engine one is built from ``AppSettings`` at startup;
    that requires the deployment to provide an activity oracle, so most
    deployments construct the engine themselves and pass it in.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Start the engine's triggers and drain them on shutdown."""
        settings = engine.settings if engine is not None else AppSettings()
        configure_logging(settings.log_level)
        app.state.settings = settings
        app.state.engine = engine if engine is not None else build_engine(settings)
        app.state.engine.start()
        try:
            yield
        finally:
            await app.state.engine.stop()

    app = FastAPI(
        title="RemindFlow Escalating Reminder Engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health.router)
    app.include_router(admin.router, prefix="/admin")

    @app.exception_handler(ItemNotFoundError)
    async def _not_found(request: Request, exc: ItemNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StateConflict)
    async def _conflict(request: Request, exc: StateConflict) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def _misconfigured(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    return app
