# ==============================================================================
# Model Lifecycle
# ==============================================================================
#
# Owns the load of a resolved artifact into an in-memory model and the
# readiness state machine that gates access to it.
#
# State Machine:
#   UNINITIALIZED --start()--> LOADING --> READY
#                                      \-> FAILED
#   READY | FAILED --reload()--> LOADING
#
# Guarantees:
#   - Only one load in flight; concurrent start()/reload() callers join it
#   - The model handle and the state are published together under one lock
#   - A FAILED state is terminal until an explicit reload()
#   - current() never blocks; await_ready() waits on a condition variable
#
# Loaded models are read-only after publication, so concurrent requests share
# them without locking.
#
# ==============================================================================

import threading
import time
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import Callable, Tuple

import torch

from landcover._utils.logging import get_logger, log_section
from landcover.serving.artifacts import (
    ArtifactMetadata,
    ArtifactResolver,
    ModelReference,
    ResolvedArtifact,
)
from landcover.serving.errors import (
    ArtifactCorrupt,
    LoadFailed,
    NotReady,
    ServingError,
)
from landcover.serving.preprocessing import ImageTransform

logger = get_logger(__name__)


class ServingState(StrEnum):
    UNINITIALIZED = auto()
    LOADING = auto()
    READY = auto()
    FAILED = auto()


@dataclass(frozen=True)
class LoadedModel:
    """Read-only handle on a model that is ready to serve."""

    module: torch.nn.Module
    labels: Tuple[str, ...]
    transform: ImageTransform
    reference: ModelReference
    metadata: ArtifactMetadata
    device: torch.device
    sha256: str
    loaded_at: float

    @property
    def input_shape(self) -> Tuple[int, int, int]:
        return self.transform.input_shape

    @property
    def num_classes(self) -> int:
        return len(self.labels)


ModelLoader = Callable[[ResolvedArtifact, torch.device], LoadedModel]


def default_device(name: str | None = None) -> torch.device:
    if name:
        return torch.device(name)
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


def load_torchscript(artifact: ResolvedArtifact, device: torch.device) -> LoadedModel:
    """Deserialize a TorchScript artifact and check it against its metadata."""
    metadata = artifact.metadata
    transform = ImageTransform.from_metadata(metadata)

    try:
        module = torch.jit.load(str(artifact.path), map_location=device)
    except (RuntimeError, ValueError) as e:
        raise ArtifactCorrupt(
            f"Could not deserialize {artifact.reference.uri}: {e}"
        ) from e
    module.eval()

    # Warm-up pass: primes the backend and checks the declared output width
    dummy = torch.zeros((1, *transform.input_shape), device=device)
    try:
        with torch.no_grad():
            out = module(dummy)
    except Exception as e:
        raise ArtifactCorrupt(
            f"Warm-up forward pass failed for {artifact.reference.uri}: {e}"
        ) from e
    if out.ndim != 2 or out.shape[1] != metadata.num_classes:
        raise ArtifactCorrupt(
            f"Model outputs shape {tuple(out.shape)}, metadata declares "
            f"{metadata.num_classes} classes"
        )

    return LoadedModel(
        module=module,
        labels=tuple(metadata.labels),
        transform=transform,
        reference=artifact.reference,
        metadata=metadata,
        device=device,
        sha256=artifact.sha256,
        loaded_at=time.time(),
    )


class ModelLifecycleManager:
    """Loads the configured model exactly once and tracks serving readiness."""

    def __init__(
        self,
        resolver: ArtifactResolver,
        reference: ModelReference,
        *,
        loader: ModelLoader = load_torchscript,
        device: torch.device | None = None,
        fetch_timeout: float | None = None,
    ):
        self.resolver = resolver
        self.reference = reference
        self.loader = loader
        self.device = device or default_device()
        self.fetch_timeout = fetch_timeout

        self._cond = threading.Condition()
        self._state = ServingState.UNINITIALIZED
        self._model: LoadedModel | None = None
        self._last_error: ServingError | None = None
        self._pending: ResolvedArtifact | None = None

    # ============================================== #
    # 🔹 SECTION: Queries
    # ============================================== #
    def current(self) -> Tuple[ServingState, LoadedModel | None]:
        """Snapshot of (state, model). Never blocks on a load."""
        # Tuple read of two attributes published together under the lock
        with self._cond:
            return self._state, self._model

    @property
    def state(self) -> ServingState:
        return self.current()[0]

    @property
    def last_error(self) -> ServingError | None:
        return self._last_error

    def await_ready(self, timeout: float | None = None) -> LoadedModel:
        """Wait until READY.

        Raises:
            LoadFailed: immediately if the state is FAILED
            NotReady: if the model is not READY within `timeout` seconds
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._state is ServingState.READY:
                    return self._model
                if self._state is ServingState.FAILED:
                    raise LoadFailed(
                        "Model failed to load; a reload is required",
                        details=self._error_details(),
                    )
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise NotReady(
                        f"Model is not ready (state: {self._state})",
                        details={"state": str(self._state)},
                    )
                self._cond.wait(remaining)

    # ============================================== #
    # 🔹 SECTION: Transitions
    # ============================================== #
    def start(self) -> ServingState:
        """Initial load. A no-op once the first load has begun."""
        with self._cond:
            if self._state is ServingState.UNINITIALIZED:
                self._state = ServingState.LOADING
                owner = True
            else:
                owner = False
        return self._run_or_join(owner)

    def reload(self, reference: ModelReference | None = None) -> ServingState:
        """Re-enter LOADING from READY or FAILED (or join a load in flight).

        Passing a different `reference` switches the served model version.
        """
        with self._cond:
            if self._state is ServingState.LOADING:
                owner = False
            else:
                if reference is not None and reference != self.reference:
                    logger.info(
                        f"🔄 Switching model {self.reference.uri} -> {reference.uri}"
                    )
                    self.reference = reference
                    self._pending = None
                else:
                    logger.info(f"🔄 Reload requested (state: {self._state})")
                self._state = ServingState.LOADING
                self._model = None
                owner = True
                self._cond.notify_all()

        state = self._run_or_join(owner)
        if not owner and reference is not None and reference != self.reference:
            # Joined a load of another version; load the requested one now
            return self.reload(reference)
        return state

    def start_in_background(self) -> threading.Thread | None:
        """Enter LOADING now and run the load on a daemon thread.

        Returns None if the first load has already begun.
        """
        with self._cond:
            if self._state is not ServingState.UNINITIALIZED:
                return None
            self._state = ServingState.LOADING

        thread = threading.Thread(target=self._load, name="model-loader", daemon=True)
        thread.start()
        return thread

    def _run_or_join(self, owner: bool) -> ServingState:
        if owner:
            self._load()
        with self._cond:
            while self._state is ServingState.LOADING:
                self._cond.wait()
            return self._state

    def _load(self) -> None:
        log_section(f"Loading model {self.reference.uri}", "📦")
        started = time.perf_counter()
        try:
            artifact = self._pending or self.resolver.resolve(
                self.reference, timeout=self.fetch_timeout
            )
            self._pending = artifact
            model = self.loader(artifact, self.device)
        except ServingError as e:
            self._fail(e)
            return
        except Exception as e:
            self._fail(ArtifactCorrupt(f"Unexpected error loading model: {e}"))
            return

        with self._cond:
            self._model = model
            self._state = ServingState.READY
            self._last_error = None
            self._pending = None
            self._cond.notify_all()

        elapsed = time.perf_counter() - started
        logger.success(f"✅ Model ready in {elapsed:.2f}s")
        logger.info(f"   Version: {model.reference.version}")
        logger.info(f"   Device: {model.device}")
        logger.info(f"   Classes: {model.num_classes}")
        logger.info(f"   Input shape: {model.input_shape}")

    def _fail(self, error: ServingError) -> None:
        logger.error(f"❌ Model load failed [{error.code}]: {error.message}", exc_info=error)
        # A bad local copy must not be retried from the cache
        if isinstance(error, ArtifactCorrupt) and self._pending is not None:
            self._pending.discard()
            self._pending = None
        with self._cond:
            self._model = None
            self._state = ServingState.FAILED
            self._last_error = error
            self._cond.notify_all()

    def _error_details(self) -> dict:
        if self._last_error is None:
            return {}
        return {"cause": self._last_error.code, "message": self._last_error.message}
