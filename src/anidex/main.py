"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from anidex.ml.model_manager import ModelManager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from anidex.api.middleware import log_requests
from anidex.api.routes import router
from anidex.config import get_settings
from anidex.ml.errors import AnalysisFailedError, InvalidImageError
from anidex.ml.inference import InferencePool
from anidex.ml.intelligence import Intelligence
from anidex.ml.model_manager import OnnxModelManager
from anidex.ml.onnx_classifier import OnnxImageClassifier

logger = logging.getLogger(__name__)


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
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting AniDex (device=%s, max_concurrent=%s, classifier=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    classifier = OnnxImageClassifier(model_manager, settings.classifier_model)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.intelligence = Intelligence(
        classifier,
        inference_pool,
        strict_orientation=settings.strict_orientation,
    )

    eviction_task = asyncio.create_task(_evict_idle_models(model_manager, settings.eviction_interval))

    logger.info("AniDex ready")
    yield

    logger.info("Shutting down AniDex")
    eviction_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction_task
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("AniDex shutdown complete")


async def _invalid_image_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def _analysis_failed_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


async def _queue_timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference queue is full, try again later"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="AniDex",
        description="On-device photo identification: ranked species labels for a photo",
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
    application.middleware("http")(log_requests)

    application.add_exception_handler(InvalidImageError, _invalid_image_handler)
    application.add_exception_handler(AnalysisFailedError, _analysis_failed_handler)
    application.add_exception_handler(TimeoutError, _queue_timeout_handler)

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using ANIDEX_HOST / ANIDEX_PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("anidex.main:app", host=settings.host, port=settings.port)
