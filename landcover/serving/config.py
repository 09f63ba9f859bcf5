# ==============================================================================
# Serving Configuration
# ==============================================================================
#
# Centralized configuration for the serving application using pydantic-settings.
#
# All settings can be overridden via environment variables (uppercase with
# underscores, e.g., MODEL_VERSION, CONFIDENCE_THRESHOLD, MAX_UPLOAD_BYTES).
#
# Configuration Categories:
#   - Model reference: bucket, version, artifact name, optional sha256 checksum
#   - Storage: fsspec protocol, S3/MinIO endpoint, local artifact cache
#   - Request policy: confidence threshold, upload size limit, media types
#   - Timeouts: artifact fetch, readiness wait, defensive inference timeout
#
# Usage:
#   from landcover.serving.config import SERVING_CONFIG
#   ref = SERVING_CONFIG.model_reference()
#
# ==============================================================================

from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from landcover.serving.artifacts import ModelReference
from landcover.serving.decision import DEFAULT_INFERENCE_WORKERS
from landcover.serving.preprocessing import DEFAULT_MAX_UPLOAD_BYTES, DEFAULT_MEDIA_TYPES


class ServingConfig(BaseSettings):
    """Serving configuration loaded from environment variables."""

    # Model reference
    model_bucket: str = "landcover-models"
    model_version: str = "v1"
    model_artifact_name: str = "model.pt"
    model_checksum: str | None = None

    # Storage options
    storage_protocol: str = "s3"
    storage_endpoint: str = "minio.minio-tenant.svc.cluster.local:80"
    storage_scheme: str = "http"
    artifact_cache_dir: str = "/tmp/landcover-artifacts"

    # Request policy
    confidence_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    max_upload_bytes: int = Field(default=DEFAULT_MAX_UPLOAD_BYTES, gt=0)
    allowed_media_types: Annotated[frozenset[str], NoDecode] = DEFAULT_MEDIA_TYPES

    # Timeouts (seconds)
    artifact_fetch_timeout_s: float = 60.0
    ready_timeout_s: float = 0.0
    inference_timeout_s: float | None = None
    inference_workers: int = Field(default=DEFAULT_INFERENCE_WORKERS, ge=1)

    device: str | None = None

    model_config = SettingsConfigDict(protected_namespaces=())

    @field_validator("allowed_media_types", mode="before")
    @classmethod
    def _split_media_types(cls, value):
        # ALLOWED_MEDIA_TYPES="image/jpeg,image/png" in the environment
        if isinstance(value, str):
            value = [v for v in value.split(",") if v.strip()]
        return frozenset(v.strip().lower() for v in value)

    def model_reference(self) -> ModelReference:
        return ModelReference(
            bucket=self.model_bucket,
            version=self.model_version,
            artifact_name=self.model_artifact_name,
            checksum=self.model_checksum,
        )


# Singleton config instance
SERVING_CONFIG = ServingConfig()
