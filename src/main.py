"""Entry point for the Vonage Voice to OpenAI Realtime relay service."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import router as api_router
from config.settings import get_settings, validate_required_settings
from realtime.errors import ConfigurationMissing

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_required_settings(get_settings())
    yield


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Vonage Realtime Voice Relay",
    description="Bridges Vonage Voice media streams to the OpenAI Realtime API.",
    lifespan=lifespan,
)
app.include_router(api_router)


def run() -> None:
    try:
        validate_required_settings(settings)
    except ConfigurationMissing as exc:
        LOGGER.error("%s. Set them in .env or the environment.", exc.detail)
        sys.exit(1)

    import uvicorn

    LOGGER.info("Listening on port %s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
