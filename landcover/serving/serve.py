"""Land-cover classifier serving application using Ray Serve + FastAPI."""

from fastapi import FastAPI, File, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from ray import serve
from ray.serve import Application

from landcover import __version__
from landcover._utils.logging import get_logger
from landcover.serving.api import (
    PREDICT_RESPONSES,
    handle_predict,
    register_error_handlers,
    root_info,
)
from landcover.serving.config import SERVING_CONFIG
from landcover.serving.orchestrator import build_orchestrator
from landcover.serving.schemas import (
    DetailedPrediction,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    PredictionResponse,
    ReloadResponse,
    RootResponse,
)

logger = get_logger(__name__)

app = FastAPI(
    title="🛰️ Land-Cover Classifier API",
    description="Land-cover classification using Ray Serve + FastAPI + PyTorch",
    version=__version__,
)
register_error_handlers(app)


@serve.deployment(
    ray_actor_options={"num_cpus": 1},
)
@serve.ingress(app)
class LandCoverClassifier:
    def __init__(self, model_version: str | None = None) -> None:
        """Initialize the classifier and start loading the model in the background."""
        logger.info("🛰️ Initializing Land-Cover Classifier Service")
        config = SERVING_CONFIG
        if model_version:
            config = config.model_copy(update={"model_version": model_version})
        self.orchestrator = build_orchestrator(config)
        # Cold start: health answers while the artifact is fetched
        self.orchestrator.manager.start_in_background()

    def __del__(self) -> None:
        """Release the inference worker pool when the replica shuts down."""
        orchestrator = getattr(self, "orchestrator", None)
        if orchestrator is not None:
            orchestrator.close()

    def reconfigure(self, config: dict) -> None:
        """Handle model updates without restarting the deployment.

        Update via: serve.run(..., user_config={"model_version": "v4"})
        """
        new_version = config.get("model_version")

        if not new_version:
            logger.warning("⚠️ No model_version provided in config")
            return

        manager = self.orchestrator.manager
        if manager.reference.version == new_version:
            logger.info("ℹ️ Model version unchanged, skipping reload")
            return

        logger.info(f"🔄 Updating model from {manager.reference.version} to {new_version}")
        manager.reload(manager.reference.with_version(new_version))

    @app.get("/", response_model=RootResponse, summary="Root endpoint")
    async def root(self):
        """Root endpoint with basic info."""
        return root_info(self.orchestrator)

    @app.get("/health", response_model=HealthResponse, summary="Health Check")
    async def health(self):
        """Health check endpoint. Always 200; readiness is in `model_loaded`."""
        return self.orchestrator.health()

    @app.get(
        "/info",
        response_model=ModelInfo,
        summary="Model Information",
        responses={503: {"description": "Model not loaded", "model": ErrorResponse}},
    )
    async def info(self):
        """Get detailed model information including normalization parameters."""
        return self.orchestrator.model_info()

    @app.post(
        "/predict",
        response_model=PredictionResponse,
        summary="Classify a land-cover image",
        responses=PREDICT_RESPONSES,
    )
    async def predict(self, file: UploadFile = File(...)):
        """
        Classify a land-cover image.

        **Input Format:**
        - Multipart upload, field `file`
        - JPEG, PNG or WEBP, at most 5 MiB by default

        **Output:**
        - prediction: class name, or "Uncertain" when confidence is below the threshold
        - confidence: softmax probability of the top class (0-1)

        **Note:** Preprocessing uses the transform stored with the model artifact.
        """
        return await handle_predict(self.orchestrator, file)

    @app.post(
        "/predict/detailed",
        response_model=DetailedPrediction,
        summary="Classify with the full score distribution",
        responses=PREDICT_RESPONSES,
    )
    async def predict_detailed(self, file: UploadFile = File(...)):
        return await handle_predict(self.orchestrator, file, detailed=True)

    @app.post("/reload", response_model=ReloadResponse, summary="Reload the model")
    async def reload(self):
        return await run_in_threadpool(self.orchestrator.reload)


class AppBuilderArgs(BaseModel):
    """Arguments for building the Ray Serve application."""

    model_version: str | None = Field(
        None,
        description="Model version tag to serve (e.g., v3); defaults to MODEL_VERSION",
    )

    model_config = {"protected_namespaces": ()}


def app_builder(args: AppBuilderArgs) -> Application:
    """Helper function to build the deployment with an optional model version.

    Examples:
        Basic usage:
        >>> serve run landcover.serving.serve:app_builder model_version="v3"

        With hot reload for development:
        >>> serve run landcover.serving.serve:app_builder model_version="v3" --reload

    Args:
        args: Configuration arguments including the model version

    Returns:
        Ray Serve Application ready to deploy
    """
    return LandCoverClassifier.bind(model_version=args.model_version)
