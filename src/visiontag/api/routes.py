"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from visiontag.api.middleware import verify_api_key
from visiontag.api.schemas import (
    ErrorResponse,
    HealthResponse,
    InitModelResponse,
    RecognitionResult,
    RecognizeEncodedRequest,
    RecognizeFrameRequest,
    RecognizePathRequest,
)

if TYPE_CHECKING:
    from visiontag.config import Settings
    from visiontag.ml.image_classifier import ClassificationResult
    from visiontag.ml.inference import InferencePool
    from visiontag.service import RecognitionService

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_RECOGNITION_ERRORS: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_service(request: Request) -> RecognitionService:
    service: RecognitionService = request.app.state.recognition_service
    return service


def _to_response(results: list[ClassificationResult]) -> list[RecognitionResult]:
    return [RecognitionResult(label=r.label, confidence=r.confidence) for r in results]


@router.post(
    "/init-model",
    response_model=InitModelResponse,
    responses={
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Load the configured model and labels",
)
async def init_model(request: Request) -> InitModelResponse:
    """Load (or reload) the model from the configured source."""
    message = await _get_service(request).init_model()
    return InitModelResponse(message=message)


@router.post(
    "/recognize/path",
    response_model=list[RecognitionResult],
    responses=_RECOGNITION_ERRORS,
    summary="Classify an image file on the server",
)
async def recognize_path(body: RecognizePathRequest, request: Request) -> list[RecognitionResult]:
    results = await _get_service(request).recognize_from_path(body.path)
    return _to_response(results)


@router.post(
    "/recognize/encoded",
    response_model=list[RecognitionResult],
    responses=_RECOGNITION_ERRORS,
    summary="Classify a base64 or data-URL image",
)
async def recognize_encoded(body: RecognizeEncodedRequest, request: Request) -> list[RecognitionResult]:
    results = await _get_service(request).recognize_from_encoded(body.data)
    return _to_response(results)


@router.post(
    "/recognize/frame",
    response_model=list[RecognitionResult],
    responses=_RECOGNITION_ERRORS,
    summary="Classify a raw RGBA camera frame",
)
async def recognize_frame(body: RecognizeFrameRequest, request: Request) -> list[RecognitionResult]:
    results = await _get_service(request).recognize_from_encoded_frame(body.width, body.height, body.rgba)
    return _to_response(results)


@router.post(
    "/classify-image",
    response_model=list[RecognitionResult],
    responses={
        **_RECOGNITION_ERRORS,
        413: {"model": ErrorResponse},
    },
    summary="Classify an uploaded image",
)
async def classify_image(file: UploadFile, request: Request) -> list[RecognitionResult]:
    """Classify an uploaded image and return ranked labels."""
    max_size = _get_settings(request).max_file_size
    data = await file.read(max_size + 1)
    if len(data) > max_size:
        raise HTTPException(
            status_code=413,
            detail=f"Upload exceeds the limit of {max_size} bytes",
        )
    results = await _get_service(request).recognize_from_bytes(data)
    return _to_response(results)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and model status."""
    settings = _get_settings(request)
    pool_stats = _get_inference_pool(request).stats()
    engine = _get_service(request).engine
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_ready=engine.is_ready,
        input_shape=list(engine.input_shape),
        label_count=len(engine.labels),
        concurrent_requests=pool_stats.active,
        queue_depth=pool_stats.queued,
        completed_requests=pool_stats.completed,
        rejected_requests=pool_stats.rejected,
    )
