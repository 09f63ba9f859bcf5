# ==============================================================================
# HTTP Surface
# ==============================================================================
#
# FastAPI application exposing the serving pipeline.
#
# Endpoints:
#   GET  /                  service information
#   GET  /health            always 200: {"status": "online", "model_loaded": ...}
#   GET  /info              model metadata (503 until the model is ready)
#   POST /predict           multipart "file" -> {"prediction", "confidence"}
#   POST /predict/detailed  same, plus the full score distribution
#   POST /reload            re-run the model load (Ready|Failed -> Loading)
#
# Errors:
#   Every ServingError is rendered as {"error": {"code", "message", "details"}}
#   with its own status code; NotReady/LoadFailed add a Retry-After header.
#
# Usage:
#   app = create_app(build_orchestrator(SERVING_CONFIG))
#   uvicorn-style servers or Ray Serve (see serve.py) can host it.
#
# ==============================================================================

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, File, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from landcover import __version__
from landcover._utils.logging import get_logger
from landcover.serving.errors import ServingError
from landcover.serving.orchestrator import RequestOrchestrator
from landcover.serving.preprocessing import InferenceRequest
from landcover.serving.schemas import (
    DetailedPrediction,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    PredictionResponse,
    ReloadResponse,
    RootResponse,
)

logger = get_logger(__name__)

SERVICE_NAME = "Land-Cover Classifier API"

PREDICT_RESPONSES = {
    200: {"description": "Successful prediction (label or 'Uncertain')"},
    400: {"description": "Corrupt image", "model": ErrorResponse},
    413: {"description": "Upload too large", "model": ErrorResponse},
    415: {"description": "Unsupported media type", "model": ErrorResponse},
    500: {"description": "Inference failed", "model": ErrorResponse},
    503: {"description": "Model not ready", "model": ErrorResponse},
}


# ============================================== #
# 🔹 SECTION: Error handling
# ============================================== #
async def serving_error_handler(request: Request, exc: ServingError) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(code=exc.code, message=exc.message, details=exc.details or None)
    )
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json"),
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServingError, serving_error_handler)


# ============================================== #
# 🔹 SECTION: Handlers shared with the Ray Serve deployment
# ============================================== #
def root_info(orchestrator: RequestOrchestrator) -> RootResponse:
    return RootResponse(
        service=SERVICE_NAME,
        version=__version__,
        status=str(orchestrator.manager.state),
        docs="/docs",
        health="/health",
    )


async def handle_predict(
    orchestrator: RequestOrchestrator, file: UploadFile, detailed: bool = False
) -> PredictionResponse | DetailedPrediction:
    """Read the upload and run it through the orchestrator off the event loop."""
    start_time = time.perf_counter()

    # Never buffer more than one byte past the limit
    payload = await file.read(orchestrator.pipeline.max_bytes + 1)
    request = InferenceRequest(
        payload=payload,
        content_type=file.content_type,
        declared_size=file.size,
    )

    result, model = await run_in_threadpool(orchestrator.predict_with_model, request)

    if not detailed:
        return PredictionResponse(prediction=result.label, confidence=result.confidence)

    return DetailedPrediction(
        prediction=result.label,
        confidence=result.confidence,
        candidate=model.labels[result.candidate_index],
        raw_scores=list(result.raw_scores),
        labels=list(model.labels),
        threshold=orchestrator.engine.threshold,
        model_version=model.reference.version,
        timestamp=datetime.now(timezone.utc),
        processing_time_ms=(time.perf_counter() - start_time) * 1000,
    )


# ============================================== #
# 🔹 SECTION: Application factory
# ============================================== #
def create_app(orchestrator: RequestOrchestrator, start_loading: bool = True) -> FastAPI:
    """Build the FastAPI app around an orchestrator.

    With `start_loading`, the model load starts in the background on startup,
    so health checks answer during the cold start.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_loading:
            orchestrator.manager.start_in_background()
        yield
        orchestrator.close()

    app = FastAPI(
        title="🛰️ Land-Cover Classifier API",
        description="Land-cover image classification with confidence-thresholded answers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    register_error_handlers(app)

    @app.get("/", response_model=RootResponse, summary="Root endpoint")
    async def root():
        return root_info(orchestrator)

    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health Check",
        responses={200: {"description": "Service is online"}},
    )
    async def health():
        return orchestrator.health()

    @app.get(
        "/info",
        response_model=ModelInfo,
        summary="Model Information",
        responses={503: {"description": "Model not loaded", "model": ErrorResponse}},
    )
    async def info():
        return orchestrator.model_info()

    @app.post(
        "/predict",
        response_model=PredictionResponse,
        summary="Classify a land-cover image",
        responses=PREDICT_RESPONSES,
    )
    async def predict(file: UploadFile = File(...)):
        return await handle_predict(orchestrator, file)

    @app.post(
        "/predict/detailed",
        response_model=DetailedPrediction,
        summary="Classify with the full score distribution",
        responses=PREDICT_RESPONSES,
    )
    async def predict_detailed(file: UploadFile = File(...)):
        return await handle_predict(orchestrator, file, detailed=True)

    @app.post(
        "/reload",
        response_model=ReloadResponse,
        status_code=status.HTTP_200_OK,
        summary="Reload the model",
    )
    async def reload():
        return await run_in_threadpool(orchestrator.reload)

    return app
