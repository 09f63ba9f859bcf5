# ==============================================================================
# Request Orchestrator
# ==============================================================================
#
# Per-request composition of the serving pipeline:
#
#   readiness gate -> preprocessing (model's own transform) -> inference
#
# The orchestrator owns no state; the lifecycle manager is injected. Every
# outcome is either a PredictionResult or a typed ServingError:
#   - NotReady / LoadFailed: raised before any preprocessing work
#   - ValidationError subclasses: caller errors, logged at warning level
#   - InferenceError: operational incident, logged at error level
#
# ==============================================================================

import time

from landcover._utils.logging import get_logger
from landcover.serving.artifacts import ArtifactResolver
from landcover.serving.decision import InferenceEngine, PredictionResult
from landcover.serving.errors import InferenceError, ValidationError
from landcover.serving.lifecycle import (
    LoadedModel,
    ModelLifecycleManager,
    ServingState,
    default_device,
)
from landcover.serving.preprocessing import (
    InferenceRequest,
    PreprocessingPipeline,
    Rejected,
)
from landcover.serving.schemas import HealthResponse, ModelInfo, ReloadResponse
from landcover.serving.storage import build_object_store

logger = get_logger(__name__)


class RequestOrchestrator:
    def __init__(
        self,
        manager: ModelLifecycleManager,
        pipeline: PreprocessingPipeline,
        engine: InferenceEngine,
        ready_timeout: float = 0.0,
    ):
        self.manager = manager
        self.pipeline = pipeline
        self.engine = engine
        self.ready_timeout = ready_timeout
        self.start_time = time.time()

    def predict(self, request: InferenceRequest) -> PredictionResult:
        return self.predict_with_model(request)[0]

    def predict_with_model(
        self, request: InferenceRequest
    ) -> tuple[PredictionResult, LoadedModel]:
        """Run one request end to end and return the model that served it."""
        # Readiness gate: fail fast, no decode work for a model that is not there
        model = self.manager.await_ready(self.ready_timeout)

        outcome = self.pipeline.validate(request, model.transform)
        if isinstance(outcome, Rejected):
            error: ValidationError = outcome.error
            logger.warning(f"⚠️ Rejected upload [{error.code}]: {error.message}")
            raise error

        try:
            result = self.engine.predict(model, outcome.value)
        except InferenceError as e:
            logger.error(
                f"❌ Inference failed on {model.reference.uri}: {e.message}",
                exc_info=True,
            )
            raise

        logger.debug(
            f"Predicted {result.label} (confidence={result.confidence:.4f}, "
            f"candidate={model.labels[result.candidate_index]})"
        )
        return result, model

    def health(self) -> HealthResponse:
        state, model = self.manager.current()
        return HealthResponse(
            model_loaded=state is ServingState.READY and model is not None,
            state=str(state),
            model_version=self.manager.reference.version,
            uptime_seconds=int(time.time() - self.start_time),
        )

    def model_info(self) -> ModelInfo:
        model = self.manager.await_ready(0)
        meta = model.metadata
        return ModelInfo(
            model_uri=model.reference.uri,
            model_version=model.reference.version,
            sha256=model.sha256,
            architecture=meta.architecture,
            trained_at=meta.trained_at,
            val_accuracy=meta.val_accuracy,
            device=str(model.device),
            expected_input_shape=list(model.input_shape),
            output_classes=list(model.labels),
            normalization_params={
                "mean": list(meta.mean),
                "std": list(meta.std),
            },
            confidence_threshold=self.engine.threshold,
        )

    def reload(self) -> ReloadResponse:
        state = self.manager.reload()
        error = self.manager.last_error if state is ServingState.FAILED else None
        return ReloadResponse(
            state=str(state),
            model_loaded=state is ServingState.READY,
            model_version=self.manager.reference.version,
            error=error.code if error else None,
        )

    def close(self) -> None:
        self.engine.close()


def build_orchestrator(config) -> RequestOrchestrator:
    """Compose every serving component from a ServingConfig."""
    resolver = ArtifactResolver(build_object_store(config), config.artifact_cache_dir)
    manager = ModelLifecycleManager(
        resolver,
        config.model_reference(),
        device=default_device(config.device),
        fetch_timeout=config.artifact_fetch_timeout_s,
    )
    pipeline = PreprocessingPipeline(
        max_bytes=config.max_upload_bytes,
        allowed_media_types=config.allowed_media_types,
    )
    engine = InferenceEngine(
        threshold=config.confidence_threshold,
        timeout=config.inference_timeout_s,
        max_workers=config.inference_workers,
    )
    return RequestOrchestrator(
        manager, pipeline, engine, ready_timeout=config.ready_timeout_s
    )
