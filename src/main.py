"""ASGI application for the Vox phone bridge."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.dependencies import get_app_settings
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from config.settings import Settings

LOGGER = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings is not None:
            settings.log_dir.mkdir(parents=True, exist_ok=True)
            LOGGER.info("Writing call logs under %s", settings.log_dir.resolve())
        yield

    app = FastAPI(
        title="Vox",
        description="Phone calling bridge: Twilio Media Streams <-> OpenAI Realtime.",
        lifespan=lifespan,
    )
    app.include_router(api_router)
    app.include_router(twilio_router)

    if settings is not None:
        app.dependency_overrides[get_app_settings] = lambda: settings
    return app
