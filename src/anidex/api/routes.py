"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from anidex.api.middleware import verify_api_key
from anidex.api.schemas import (
    BestLabelResponse,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from anidex.ml.model_manager import MODEL_REGISTRY
from anidex.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from anidex.config import Settings
    from anidex.ml.inference import InferencePool
    from anidex.ml.intelligence import Intelligence
    from anidex.ml.model_manager import ModelManager
    from anidex.ml.preprocessing import RasterImage

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_intelligence(request: Request) -> Intelligence:
    intelligence: Intelligence = request.app.state.intelligence
    return intelligence


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


async def _read_image(file: UploadFile, settings: Settings) -> RasterImage:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds limit of {settings.max_file_size} bytes",
        )
    # Decoding a large photo is CPU-bound; keep it off the event loop.
    return await run_in_threadpool(
        decode_image,
        data,
        max_pixels=settings.max_image_pixels,
        strict_orientation=settings.strict_orientation,
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1, description="Maximum number of tags to return")] = None,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = _get_settings(request)
    intelligence = _get_intelligence(request)

    limit = min(top_k or settings.default_top_k, settings.max_top_k)
    image = await _read_image(file, settings)
    analysis = await intelligence.analyze(image, top_k=limit)

    best = analysis.best_label
    return ClassifyImageResponse(
        tags=[ImageTag.from_label(label) for label in analysis.labels],
        best_label=ImageTag.from_label(best) if best is not None else None,
        model=intelligence.model_name,
    )


@router.post(
    "/best-label",
    response_model=BestLabelResponse,
    responses=_ERROR_RESPONSES,
    summary="Return the single most likely label for an image",
)
async def best_label(request: Request, file: UploadFile) -> BestLabelResponse:
    settings = _get_settings(request)
    intelligence = _get_intelligence(request)

    image = await _read_image(file, settings)
    best = await intelligence.best_label(image)
    return BestLabelResponse(
        best_label=ImageTag.from_label(best) if best is not None else None,
        model=intelligence.model_name,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    stats = _get_inference_pool(request).stats()
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and whether each is the active classifier."""
    settings = _get_settings(request)

    models = [
        ModelInfo(
            name=spec.name,
            task=spec.task,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
