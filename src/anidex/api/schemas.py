"""Pydantic request/response schemas for the AniDex API."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from anidex.ml.image_classifier import LabelConfidence


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    id: UUID
    label: str
    confidence: float = Field(ge=0.0, le=1.0)

    @classmethod
    def from_label(cls, label: LabelConfidence) -> ImageTag:
        return cls(id=label.id, label=label.label, confidence=label.confidence)


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    tags: list[ImageTag] = Field(description="Tags ordered by descending confidence")
    best_label: ImageTag | None
    model: str


class BestLabelResponse(BaseModel):
    """Response for the best-label endpoint."""

    best_label: ImageTag | None
    model: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'image_classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
