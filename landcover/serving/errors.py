# ==============================================================================
# Serving Errors
# ==============================================================================
#
# Typed error taxonomy for the serving pipeline.
#
# Every error carries a stable `code` discriminant and the HTTP status it is
# surfaced as, so clients can branch programmatically instead of parsing text.
#
# Hierarchy:
#   ServingError
#   ├── ArtifactError            (fatal to a load attempt, 503)
#   │   ├── ArtifactUnavailable
#   │   ├── ArtifactCorrupt
#   │   └── ArtifactTransportError
#   ├── NotReady                 (transient, 503 + Retry-After)
#   ├── LoadFailed               (serving state is Failed, 503 + Retry-After)
#   ├── ValidationError          (caller error, 4xx, never retried)
#   │   ├── PayloadTooLarge      (413)
#   │   ├── UnsupportedMediaType (415)
#   │   └── CorruptImage         (400)
#   └── InferenceError           (backend fault, 500)
#
# ==============================================================================

from typing import Any


class ServingError(Exception):
    """Base class for all serving errors."""

    code = "serving_error"
    status_code = 500
    retry_after: int | None = None

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================== #
# 🔹 SECTION: Artifact errors
# ============================================== #
class ArtifactError(ServingError):
    code = "artifact_error"
    status_code = 503


class ArtifactUnavailable(ArtifactError):
    """The remote object (model or metadata sidecar) does not exist."""

    code = "artifact_unavailable"


class ArtifactCorrupt(ArtifactError):
    """Checksum mismatch, unreadable metadata or an undeserializable model."""

    code = "artifact_corrupt"


class ArtifactTransportError(ArtifactError):
    """Network or storage fault, including fetch timeouts."""

    code = "artifact_transport_error"


# ============================================== #
# 🔹 SECTION: Readiness errors
# ============================================== #
class NotReady(ServingError):
    """The model is not loaded yet. Retry later."""

    code = "not_ready"
    status_code = 503
    retry_after = 5


class LoadFailed(ServingError):
    """The last load attempt failed; serving is down until a reload succeeds."""

    code = "load_failed"
    status_code = 503
    retry_after = 30


# ============================================== #
# 🔹 SECTION: Request validation errors
# ============================================== #
class ValidationError(ServingError):
    code = "validation_error"
    status_code = 400


class PayloadTooLarge(ValidationError):
    code = "payload_too_large"
    status_code = 413


class UnsupportedMediaType(ValidationError):
    code = "unsupported_media_type"
    status_code = 415


class CorruptImage(ValidationError):
    code = "corrupt_image"
    status_code = 400


# ============================================== #
# 🔹 SECTION: Inference errors
# ============================================== #
class InferenceError(ServingError):
    """The forward pass failed. Never reported as an abstention."""

    code = "inference_error"
    status_code = 500
