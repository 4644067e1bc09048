"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from healthysnacks.api.middleware import require_api_key
from healthysnacks.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from healthysnacks.ml.model_manager import MODEL_REGISTRY
from healthysnacks.ml.preprocessing import ImageDecodeError, decode_image

if TYPE_CHECKING:
    from healthysnacks.classification import ClassificationAdapter
    from healthysnacks.config import Settings
    from healthysnacks.ml.inference import InferencePool
    from healthysnacks.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

HTTP_413_CONTENT_TOO_LARGE = 413

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_adapter(request: Request) -> ClassificationAdapter:
    adapter: ClassificationAdapter = request.app.state.adapter
    return adapter


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a snack photo",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked labels plus display text."""
    settings = _get_settings(request)
    data = await file.read()
    if len(data) > settings.max_file_size:
        return _error(HTTP_413_CONTENT_TOO_LARGE, f"File exceeds {settings.max_file_size} bytes")

    try:
        picked = decode_image(data, settings.max_image_pixels)
    except ImageDecodeError as exc:
        logger.info("Rejected upload %s: %s", file.filename, exc)
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    adapter = _get_adapter(request)
    outcome = await adapter.classify(picked)
    if outcome.timed_out:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, adapter.describe(outcome))
    if outcome.results is None:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, adapter.describe(outcome))

    return ClassifyImageResponse(
        tags=[ImageTag(label=r.label, confidence=min(max(r.confidence, 0.0), 1.0)) for r in outcome.results],
        message=adapter.describe(outcome),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return known models; the configured one is 'active'."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task.value,
                status="active" if spec.name == settings.model_name else "available",
                license=spec.license,
                labels=list(spec.labels),
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
