# ==============================================================================
# Serving API Schemas
# ==============================================================================
#
# Pydantic models for the land-cover classifier API responses.
#
# Schema Overview:
#   - PredictionResponse: label (or "Uncertain") and confidence
#   - DetailedPrediction: adds the full score distribution and model version
#   - HealthResponse: always "online", plus whether a model is loaded
#   - ModelInfo: model metadata including the versioned transform parameters
#   - ErrorResponse: structured, typed error with a stable code
#
# Input:
#   POST /predict takes a multipart upload (field "file") of a JPEG, PNG or
#   WEBP image. Requests are validated by the preprocessing pipeline, not by
#   pydantic, so every rejection carries a typed error code.
#
# ==============================================================================

"""Schema definitions for the land-cover serving module."""

from datetime import datetime
from enum import StrEnum, auto
from typing import List

from pydantic import BaseModel, Field


class APIStatus(StrEnum):
    """API status enumeration. The process answers health checks whenever it runs."""

    ONLINE = auto()


class PredictionResponse(BaseModel):
    """Response model for predictions."""

    prediction: str = Field(
        ..., description="Predicted class name, or 'Uncertain' below the threshold"
    )
    confidence: float = Field(
        ..., description="Top-class probability (0-1), reported even when abstaining",
        ge=0.0,
        le=1.0,
    )


class DetailedPrediction(PredictionResponse):
    """Prediction with the full score distribution, for debugging and audits."""

    candidate: str = Field(..., description="Top-scoring class, even when abstaining")
    raw_scores: List[float] = Field(
        ..., description="Probability per class, in label order"
    )
    labels: List[str] = Field(..., description="Ordered label set of the model")
    threshold: float = Field(..., description="Confidence threshold in effect")
    model_version: str = Field(..., description="Version tag of the model used")
    timestamp: datetime = Field(..., description="Prediction timestamp UTC")
    processing_time_ms: float = Field(
        ..., description="Time taken to process request in milliseconds"
    )

    model_config = {"protected_namespaces": ()}


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: APIStatus = Field(APIStatus.ONLINE, description="API status")
    model_loaded: bool = Field(..., description="Whether a model is ready to serve")
    state: str = Field(..., description="Serving state of the model lifecycle")
    model_version: str | None = Field(None, description="Configured model version")
    uptime_seconds: int | None = Field(None, description="Service uptime in seconds")

    model_config = {"protected_namespaces": ()}


class ModelInfo(BaseModel):
    """Model metadata information."""

    model_uri: str = Field(..., description="Store location of the model artifact")
    model_version: str = Field(..., description="Model version tag")
    sha256: str = Field(..., description="sha256 of the loaded artifact")
    architecture: str = Field(..., description="Model architecture name")
    trained_at: datetime | None = Field(None, description="When the model was trained")
    val_accuracy: float | None = Field(None, description="Validation accuracy")
    device: str = Field(..., description="Device the model runs on")
    expected_input_shape: List[int] = Field(
        ..., description="Model input shape (channels, height, width)"
    )
    output_classes: List[str] = Field(..., description="List of output class names")
    normalization_params: dict = Field(
        ..., description="Normalization parameters (mean, std) used by the model"
    )
    confidence_threshold: float = Field(
        ..., description="Minimum confidence for a concrete label"
    )

    model_config = {"protected_namespaces": ()}


class ReloadResponse(BaseModel):
    """Response model for a reload request."""

    state: str = Field(..., description="Serving state after the reload attempt")
    model_loaded: bool = Field(..., description="Whether a model is ready to serve")
    model_version: str = Field(..., description="Model version tag")
    error: str | None = Field(None, description="Error code if the reload failed")

    model_config = {"protected_namespaces": ()}


class RootResponse(BaseModel):
    """Response model for root endpoint."""

    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    status: str = Field(..., description="Service status")
    docs: str = Field(..., description="URL to API documentation")
    health: str = Field(..., description="URL to health check endpoint")


class ErrorDetail(BaseModel):
    """Error detail model."""

    code: str = Field(..., description="Stable error discriminant")
    message: str = Field(..., description="Error message")
    details: dict | None = Field(None, description="Additional error details")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: ErrorDetail = Field(..., description="Error details")
