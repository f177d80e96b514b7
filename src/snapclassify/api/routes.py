"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from snapclassify.api.middleware import verify_api_key
from snapclassify.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
    SessionResponse,
)
from snapclassify.errors import EngineExecutionFailure, EngineUnavailable, ImageDecodeFailure
from snapclassify.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from snapclassify.config import Settings
    from snapclassify.ml.inference import InferencePool
    from snapclassify.ml.model_manager import ModelManager
    from snapclassify.session import ClassificationSession

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_session(request: Request) -> ClassificationSession:
    session: ClassificationSession = request.app.state.session
    return session


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    limit = _get_settings(request).max_file_size
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds {limit} bytes",
        )
    return data


# ---------------------------------------------------------------------------
# Session (the picker screen)
# ---------------------------------------------------------------------------


@router.get(
    "/session",
    response_model=SessionResponse,
    summary="Current classification state",
)
async def get_session_state(request: Request) -> SessionResponse:
    """Return the selected image, result text, busy flag and error."""
    return SessionResponse.from_state(_get_session(request).state)


@router.put(
    "/session/image",
    response_model=SessionResponse,
    responses={status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse}},
    summary="Select an image and classify it",
)
async def submit_image(request: Request, file: UploadFile, wait: bool = False) -> SessionResponse:
    """Replace the selected image and start classifying it.

    With ``wait=true`` the response is sent once the classification settles.
    """
    data = await _read_upload(request, file)
    session = _get_session(request)
    session.submit_image(data)
    if wait:
        await session.wait()
    return SessionResponse.from_state(session.state)


@router.delete(
    "/session/image",
    response_model=SessionResponse,
    summary="Deselect the image",
)
async def remove_image(request: Request) -> SessionResponse:
    """Drop the selected image and its result without classifying."""
    session = _get_session(request)
    session.submit_image(None)
    return SessionResponse.from_state(session.state)


@router.post(
    "/session/classify",
    response_model=SessionResponse,
    summary="Classify the selected image again",
)
async def classify_selected(request: Request, wait: bool = False) -> SessionResponse:
    session = _get_session(request)
    session.classify()
    if wait:
        await session.wait()
    return SessionResponse.from_state(session.state)


@router.post(
    "/session/reset",
    response_model=SessionResponse,
    summary="Clear image, result and error",
)
async def reset_session(request: Request) -> SessionResponse:
    session = _get_session(request)
    session.reset()
    return SessionResponse.from_state(session.state)


# ---------------------------------------------------------------------------
# Stateless classification
# ---------------------------------------------------------------------------


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags without touching the session."""
    classifier = request.app.state.classifier
    if classifier is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(EngineUnavailable()),
        )

    data = await _read_upload(request, file)
    pool = _get_inference_pool(request)
    try:
        results = await pool.run(classifier.classify, data)
    except ImageDecodeFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except EngineExecutionFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return ClassifyImageResponse(
        model=classifier.model_name,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager: ModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_available=_get_session(request).engine_available,
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
    """Return known classifiers and whether the configured one is serving."""
    settings = _get_settings(request)
    engine_available = _get_session(request).engine_available

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name != settings.classifier_model:
            model_status = "available"
        elif engine_available:
            model_status = "active"
        else:
            model_status = "unavailable"

        models.append(
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
