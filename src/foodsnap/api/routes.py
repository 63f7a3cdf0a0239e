"""API route definitions."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, UploadFile, status

from foodsnap.api.middleware import (
    get_app_settings,
    get_classification_service,
    get_inference_pool,
    get_model_manager,
    verify_api_key,
)
from foodsnap.api.schemas import (
    ErrorResponse,
    HealthResponse,
    LabelResponse,
    ModelInfo,
    ModelsResponse,
    PredictionResponse,
)
from foodsnap.display import format_prediction
from foodsnap.ml.errors import ClassificationError
from foodsnap.ml.model_manager import MODEL_REGISTRY

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _too_large(limit: int) -> HTTPException:
    return HTTPException(
        status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE.value,
        detail=f"File exceeds {limit} bytes",
    )


@router.post(
    "/classify-image",
    response_model=PredictionResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        HTTPStatus.REQUEST_ENTITY_TOO_LARGE.value: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a food image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    source: Annotated[str | None, Form(description="Where the image came from: 'camera' or 'library'")] = None,
    path: Annotated[Literal["mediated", "direct"] | None, Query(description="Inference path override")] = None,
) -> PredictionResponse:
    """Classify an uploaded image and return its top prediction."""
    settings = get_app_settings(request)
    service = get_classification_service(request)

    limit = settings.max_file_size
    if file.size is not None and file.size > limit:
        raise _too_large(limit)
    # Never buffer more than one byte past the limit.
    image_bytes = await file.read(limit + 1)
    if len(image_bytes) > limit:
        raise _too_large(limit)
    logger.info("Classifying %s (%d bytes, source=%s)", file.filename, len(image_bytes), source or "unknown")

    try:
        result = await service.classify(image_bytes, path)
    except ClassificationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.display_message) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc

    return PredictionResponse(
        label=result.label,
        confidence=min(max(result.confidence, 0.0), 1.0),
        percent=result.percent,
        display=format_prediction(result),
    )


@router.get(
    "/label",
    response_model=LabelResponse,
    summary="Current classification label",
)
async def current_label(request: Request) -> LabelResponse:
    """Return the label produced by the most recent classification request."""
    service = get_classification_service(request)
    return LabelResponse(label=service.label.text)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_app_settings(request)
    pool = get_inference_pool(request)
    manager = get_model_manager(request)
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
    """Return available classifiers, marking the configured one active."""
    settings = get_app_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            task=spec.task,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
            input_size=spec.input_size,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
