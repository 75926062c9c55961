"""Pydantic request/response schemas for the RustSense API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from rustsense.ml.classifier import InvalidPrediction, Prediction


class PredictionResponse(BaseModel):
    """Outcome of classifying one image.

    ``status`` is 'invalid' when the model output was unusable (NaN); no
    label is given in that case.
    """

    status: Literal["ok", "invalid"]
    label: str | None = Field(default=None, description="Severity label: 'minor', 'moderate', or 'severe'")
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    probabilities: dict[str, float] = Field(default_factory=dict)
    detail: str | None = None

    @classmethod
    def from_prediction(cls, prediction: Prediction) -> PredictionResponse:
        if isinstance(prediction, InvalidPrediction):
            return cls(status="invalid", detail=prediction.reason)
        return cls(
            status="ok",
            label=prediction.label,
            confidence=prediction.confidence,
            probabilities=prediction.probabilities,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_ready: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    completed_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    labels: list[str]
    input_size: int
    status: str = Field(description="Model status: 'active', 'loaded', or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
