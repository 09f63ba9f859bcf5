# ==============================================================================
# Inference & Decision Engine
# ==============================================================================
#
# Runs the forward pass and turns raw scores into a decision that is safe to
# show a caller.
#
# Algorithm:
#   1. Forward pass -> one raw score per class
#   2. Softmax -> probability distribution (finite, >= 0, sums to 1)
#   3. argmax -> candidate label (ties go to the lowest class index)
#   4. Confidence threshold policy:
#        confidence >= threshold  -> candidate label
#        confidence <  threshold  -> ABSTAIN_SENTINEL, same numeric confidence
#
# A failed forward pass is an InferenceError, never an abstention.
#
# ==============================================================================

import math
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence, Tuple

import torch

from landcover.serving.errors import InferenceError

if TYPE_CHECKING:
    from landcover.serving.lifecycle import LoadedModel
    from landcover.serving.preprocessing import DecodedImage

ABSTAIN_SENTINEL = "Uncertain"
DEFAULT_CONFIDENCE_THRESHOLD = 0.60
DISTRIBUTION_TOLERANCE = 1e-4
DEFAULT_INFERENCE_WORKERS = 4


@dataclass(frozen=True)
class PredictionResult:
    label: str
    confidence: float
    raw_scores: Tuple[float, ...]
    candidate_index: int

    @property
    def abstained(self) -> bool:
        return self.label == ABSTAIN_SENTINEL


def to_distribution(logits: torch.Tensor) -> Tuple[float, ...]:
    """Softmax over a single row of logits, checked to be a distribution."""
    probs = torch.softmax(logits.detach().to(torch.float64).flatten(), dim=0)
    values = tuple(float(p) for p in probs.cpu())

    if not all(math.isfinite(p) and p >= 0.0 for p in values):
        raise InferenceError(
            "Model produced a non-finite score distribution",
            details={"non_finite": sum(not math.isfinite(p) for p in values)},
        )
    total = math.fsum(values)
    if abs(total - 1.0) > DISTRIBUTION_TOLERANCE:
        raise InferenceError(
            f"Score distribution sums to {total}, expected 1",
            details={"sum": total},
        )
    return values


def select_label(
    probs: Sequence[float], labels: Sequence[str], threshold: float
) -> Tuple[str, float, int]:
    """Apply the confidence threshold policy.

    Returns (label, confidence, candidate_index). Exactly equal maxima resolve
    to the lowest index, so results are reproducible.
    """
    if len(probs) != len(labels):
        raise InferenceError(
            f"Got {len(probs)} scores for {len(labels)} labels",
            details={"scores": len(probs), "labels": len(labels)},
        )

    best = 0
    for i in range(1, len(probs)):
        if probs[i] > probs[best]:
            best = i
    confidence = probs[best]

    if confidence >= threshold:
        return labels[best], confidence, best
    return ABSTAIN_SENTINEL, confidence, best


class InferenceEngine:
    """Forward pass plus the confidence-threshold decision."""

    def __init__(
        self,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        timeout: float | None = None,
        max_workers: int = DEFAULT_INFERENCE_WORKERS,
    ):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be in [0, 1], got {threshold}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.threshold = threshold
        self.timeout = timeout
        # A timed-out forward pass cannot be interrupted and keeps its worker
        # until it returns. Once every worker is stuck, queued requests time
        # out as well.
        self._pool = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="inference")
            if timeout
            else None
        )

    def close(self) -> None:
        """Release the timeout worker pool without waiting on stuck calls."""
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None

    def forward(self, model: "LoadedModel", image: "DecodedImage") -> torch.Tensor:
        batch = image.tensor.unsqueeze(0).to(model.device)
        with torch.no_grad():
            return model.module(batch)

    def predict(self, model: "LoadedModel", image: "DecodedImage") -> PredictionResult:
        try:
            if self._pool is None:
                logits = self.forward(model, image)
            else:
                logits = self._pool.submit(self.forward, model, image).result(
                    timeout=self.timeout
                )
        except FuturesTimeout as e:
            raise InferenceError(
                f"Forward pass exceeded {self.timeout}s",
                details={"timeout_s": self.timeout},
            ) from e
        except Exception as e:
            raise InferenceError(
                f"Forward pass failed: {e}",
                details={"exception": type(e).__name__},
            ) from e

        if not isinstance(logits, torch.Tensor) or logits.ndim != 2 or logits.shape[0] != 1:
            shape = tuple(logits.shape) if isinstance(logits, torch.Tensor) else type(logits).__name__
            raise InferenceError(
                f"Expected logits of shape (1, {model.num_classes}), got {shape}"
            )

        probs = to_distribution(logits[0])
        label, confidence, index = select_label(probs, model.labels, self.threshold)

        return PredictionResult(
            label=label,
            confidence=confidence,
            raw_scores=probs,
            candidate_index=index,
        )
