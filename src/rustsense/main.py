"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from rustsense.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rustsense.api.routes import router
from rustsense.config import get_settings
from rustsense.ml.inference import InferencePool
from rustsense.ml.model_manager import ModelManager, OnnxModelManager
from rustsense.ml.pipeline import SeverityPipeline, SlotRegistry
from rustsense.ml.preprocessing import ImagePreprocessor, PreprocessConfig

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


def build_pipeline(settings: Settings, model_manager: ModelManager) -> SeverityPipeline | None:
    """Load the configured model and wire up the pipeline.

    Returns None (and logs why) if the model cannot be loaded; the API then
    answers classification requests with 503 instead of failing to start.
    """
    try:
        adapter = model_manager.load_adapter(settings.model)
    except Exception:
        logger.exception("Failed to load model %s", settings.model)
        return None
    preprocessor = ImagePreprocessor(PreprocessConfig.from_settings(settings))
    logger.info("Model %s ready", adapter.model_name)
    return SeverityPipeline(preprocessor, adapter)


async def _evict_idle_models(model_manager: ModelManager) -> None:
    while True:
        await asyncio.sleep(EVICTION_INTERVAL_SECONDS)
        model_manager.unload_idle_models()


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
        "Starting RustSense (device=%s, max_concurrent=%s, model=%s, resize=%s, crop=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model,
        settings.resize_size,
        settings.crop_size,
    )

    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager
    app.state.pipeline = await asyncio.to_thread(build_pipeline, settings, model_manager)
    app.state.inference_pool = InferencePool(settings)
    app.state.slots = SlotRegistry(settings.max_sessions)

    eviction_task = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(_evict_idle_models(model_manager))

    logger.info("RustSense ready")
    yield

    logger.info("Shutting down RustSense")
    if eviction_task is not None:
        eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction_task
    app.state.inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("RustSense shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="RustSense",
        description="Rust severity classification (minor / moderate / severe) from JPEG photos",
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
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("rustsense.main:app", host=settings.host, port=settings.port)
