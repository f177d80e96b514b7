"""Pydantic request/response schemas for the SnapClassify API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from snapclassify.session import Classification

if TYPE_CHECKING:
    from snapclassify.session import SessionState


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the stateless image classification endpoint."""

    model: str
    tags: list[ImageTag]


class SessionResponse(BaseModel):
    """Snapshot of the classification session as the screen renders it."""

    image_present: bool
    image_size: int = Field(description="Size of the selected image in bytes (0 when none)")
    result_text: str = Field(description="'<label>\\n(<percent>% confidence)' or '' when there is no result")
    label: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    busy: bool
    error: str | None = None

    @classmethod
    def from_state(cls, state: SessionState) -> SessionResponse:
        outcome = state.outcome
        classified = isinstance(outcome, Classification)
        return cls(
            image_present=state.image is not None,
            image_size=len(state.image) if state.image is not None else 0,
            result_text=state.result_text,
            label=outcome.label if classified else None,
            confidence=outcome.confidence if classified else None,
            busy=state.busy,
            error=state.error,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_available: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'image_classification'")
    status: str = Field(description="Model status: 'active', 'available', or 'unavailable'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
