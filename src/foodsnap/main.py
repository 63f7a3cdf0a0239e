"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from foodsnap.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from foodsnap.api.routes import router
from foodsnap.config import Settings, get_settings
from foodsnap.ml.inference import ClassificationLabel, InferencePool
from foodsnap.ml.model_manager import OnnxModelManager
from foodsnap.ml.pipeline import ClassificationPipeline
from foodsnap.service import ClassificationService

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings, model_manager: ModelManager | None = None) -> None:
    """Build the inference stack and attach it to ``app.state``."""
    manager = model_manager if model_manager is not None else OnnxModelManager(settings)
    pool = InferencePool(settings)
    label = ClassificationLabel()

    app.state.settings = settings
    app.state.model_manager = manager
    app.state.inference_pool = pool
    app.state.classification_service = ClassificationService(
        pipeline=ClassificationPipeline(settings, manager),
        pool=pool,
        label=label,
    )


async def _evict_idle_models(manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FoodSnap (device=%s, max_concurrent=%s, model=%s, path=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.inference_path,
    )

    init_app_state(app, settings)
    service: ClassificationService = app.state.classification_service
    service.label.start()
    eviction = asyncio.create_task(
        _evict_idle_models(app.state.model_manager, settings.eviction_interval),
        name="foodsnap-eviction",
    )

    logger.info("FoodSnap ready")
    yield

    logger.info("Shutting down FoodSnap")
    eviction.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction
    await service.label.stop()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("FoodSnap shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FoodSnap",
        description="Classify a food photo with a pretrained image classifier",
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
