"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from wdtagger.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wdtagger import __version__
from wdtagger.api.routes import router
from wdtagger.config import get_settings
from wdtagger.ml.inference import InferencePool
from wdtagger.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


async def _evict_idle_models(manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting wdtagger (device=%s, max_concurrent=%s, model=%s, general_mcut=%s, character_mcut=%s)",
        settings.device,
        settings.max_concurrent,
        settings.tagger_model,
        settings.general_mcut,
        settings.character_mcut,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager

    eviction_task = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(_evict_idle_models(model_manager, EVICTION_INTERVAL_SECONDS))

    logger.info("wdtagger ready")
    try:
        yield
    finally:
        logger.info("Shutting down wdtagger")
        if eviction_task is not None:
            eviction_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await eviction_task
        inference_pool.shutdown()
        model_manager.shutdown()
        logger.info("wdtagger shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="wdtagger",
        description="Multi-label image tagging API for WaifuDiffusion tagger models",
        version=__version__,
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
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("wdtagger.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
