"""Pydantic request/response schemas for the FoodSnap API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PredictionResponse(BaseModel):
    """The top prediction for an uploaded image."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0, description="Model confidence (0.0-1.0)")
    percent: int = Field(description="Confidence as a rounded whole percentage")
    display: str = Field(description="Human-readable prediction, as shown to the user")


class LabelResponse(BaseModel):
    """The currently observed classification label."""

    label: str


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
    input_size: int = Field(description="Square input size in pixels")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
