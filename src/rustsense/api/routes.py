"""API route definitions."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status

from rustsense.api.dependencies import (
    get_inference_pool,
    get_model_manager,
    get_settings,
    get_slots,
    require_pipeline,
    verify_api_key,
)
from rustsense.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionResponse,
)
from rustsense.ml.errors import AdapterError, DecodeError, ResizeError
from rustsense.ml.model_manager import MODEL_REGISTRY
from rustsense.ml.pipeline import PredictionSlot, classify_latest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_JPEG_EXTENSIONS = (".jpg", ".jpeg")


def _looks_like_jpeg(file: UploadFile) -> bool:
    filename = (file.filename or "").lower()
    content_type = (file.content_type or "").lower()
    return filename.endswith(_JPEG_EXTENSIONS) or "jpeg" in content_type


@router.post(
    "/classify",
    response_model=PredictionResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify rust severity in a JPEG photo",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    session_id: Annotated[str | None, Form()] = None,
) -> PredictionResponse:
    """Classify an uploaded JPEG as minor, moderate, or severe.

    With ``session_id``, only the newest upload of that session publishes a
    result; an older upload still in flight gets 409 when it completes.
    """
    settings = get_settings(request)
    pipeline = require_pipeline(request)

    if not _looks_like_jpeg(file):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Please upload a JPEG image",
        )

    image_bytes = await file.read(settings.max_file_size + 1)
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )

    slot = get_slots(request).get(session_id) if session_id is not None else PredictionSlot()
    try:
        prediction = await classify_latest(get_inference_pool(request), pipeline, slot, image_bytes)
    except DecodeError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ResizeError as exc:
        logger.error("Resize failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except AdapterError as exc:
        logger.error("Inference failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, retry later",
        ) from exc

    if prediction is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Superseded by a newer upload in the same session",
        )
    return PredictionResponse.from_prediction(prediction)


@router.get(
    "/sessions/{session_id}/prediction",
    response_model=PredictionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Latest prediction for a session",
)
async def latest_prediction(request: Request, session_id: str) -> PredictionResponse:
    """Return the most recent published prediction of a session."""
    slot = get_slots(request).peek(session_id)
    prediction = slot.latest if slot is not None else None
    if prediction is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No prediction for session {session_id}",
        )
    return PredictionResponse.from_prediction(prediction)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    stats = get_inference_pool(request).stats()
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_ready=request.app.state.pipeline is not None,
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
        completed_requests=stats.completed,
        failed_requests=stats.failed,
        rejected_requests=stats.rejected,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered models and their status."""
    settings = get_settings(request)
    loaded = set(get_model_manager(request).get_loaded_models())

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        if name == settings.model:
            model_status = "active"
        elif name in loaded:
            model_status = "loaded"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=name,
                labels=list(spec.labels),
                input_size=spec.input_size,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
