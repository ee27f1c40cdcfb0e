"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from embryolens.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from embryolens.api.routes import router
from embryolens.config import get_settings
from embryolens.factory import build_services
from embryolens.session.registry import SessionRegistry

logger = logging.getLogger(__name__)


async def _evict_idle_models(model_manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        model_manager.unload_idle_models()


async def _expire_idle_sessions(registry: SessionRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await registry.expire_idle()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting EmbryoLens (device=%s, classifier=%s, validity=%s, metrics=%s)",
        settings.device,
        settings.classifier,
        settings.validity_policy,
        settings.metrics_source,
    )

    services = build_services(settings)
    app.state.services = services
    sessions = SessionRegistry(services.new_controller, ttl=settings.session_ttl)
    app.state.sessions = sessions

    sweepers: list[asyncio.Task[None]] = []
    if services.model_manager is not None and settings.model_ttl > 0:
        sweepers.append(
            asyncio.create_task(
                _evict_idle_models(services.model_manager, max(settings.model_ttl / 2, 1.0)),
                name="model-eviction",
            )
        )
    if settings.session_ttl > 0:
        sweepers.append(
            asyncio.create_task(
                _expire_idle_sessions(sessions, max(settings.session_ttl / 2, 1.0)),
                name="session-expiry",
            )
        )

    logger.info("EmbryoLens ready")
    yield

    logger.info("Shutting down EmbryoLens")
    for sweeper in sweepers:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await sessions.shutdown()
    services.shutdown()
    logger.info("EmbryoLens shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="EmbryoLens",
        description="Embryo developmental-stage classification and model analysis API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("embryolens.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
