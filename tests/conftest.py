"""Shared test fixtures for the land-cover serving tests.

Artifacts are published into fsspec's in-memory filesystem; models are tiny
TorchScript modules that return fixed scores so every prediction is exact.
"""

import io
import json
import uuid
from pathlib import Path

import fsspec
import pytest
import torch
from PIL import Image

from landcover.serving.artifacts import ArtifactResolver, ModelReference
from landcover.serving.decision import InferenceEngine
from landcover.serving.lifecycle import ModelLifecycleManager
from landcover.serving.orchestrator import RequestOrchestrator
from landcover.serving.preprocessing import PreprocessingPipeline
from landcover.serving.storage import FsspecObjectStore, artifact_key, metadata_key

LABELS = [
    "AnnualCrop",
    "Forest",
    "HerbaceousVegetation",
    "Highway",
    "Industrial",
    "Pasture",
    "PermanentCrop",
    "Residential",
    "River",
    "SeaLake",
]
FOREST = LABELS.index("Forest")
INPUT_SIZE = (32, 32)


class FixedScores(torch.nn.Module):
    """Returns the same logits for every image in the batch."""

    def __init__(self, logits: torch.Tensor):
        super().__init__()
        self.register_buffer("logits", logits)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.logits.unsqueeze(0).expand(x.shape[0], -1)


def logits_for(index: int, confidence: float, num_classes: int = len(LABELS)) -> torch.Tensor:
    """Logits whose softmax puts `confidence` on `index`, the rest spread evenly."""
    rest = (1.0 - confidence) / (num_classes - 1)
    probs = torch.full((num_classes,), rest, dtype=torch.float64)
    probs[index] = confidence
    return torch.log(probs).float()


def torchscript_bytes(module: torch.nn.Module) -> bytes:
    buffer = io.BytesIO()
    torch.jit.save(torch.jit.script(module), buffer)
    return buffer.getvalue()


def make_metadata(**overrides) -> dict:
    metadata = {
        "architecture": "resnet18",
        "num_classes": len(LABELS),
        "trained_at": "2026-09-01T12:00:00Z",
        "val_accuracy": 0.97,
        "labels": LABELS,
        "input_size": list(INPUT_SIZE),
        "mean": [0.344, 0.380, 0.408],
        "std": [0.203, 0.136, 0.115],
    }
    metadata.update(overrides)
    return metadata


def image_bytes(fmt: str = "PNG", size=(48, 40), color=(34, 139, 34)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format=fmt)
    return buffer.getvalue()


class CountingStore(FsspecObjectStore):
    """Object store that records every key read."""

    def __init__(self, fs, root):
        super().__init__(fs, root)
        self.reads: list[str] = []

    def read(self, key: str) -> bytes:
        self.reads.append(key)
        return super().read(key)


class Bucket:
    """In-memory bucket with helpers to publish model versions."""

    def __init__(self):
        self.fs = fsspec.filesystem("memory")
        self.name = f"bucket-{uuid.uuid4().hex[:8]}"
        self.store = CountingStore(self.fs, self.name)

    def put(self, key: str, data: bytes) -> None:
        self.fs.pipe(f"{self.name}/{key}", data)

    def publish(
        self,
        version: str = "v1",
        model: bytes | None = None,
        metadata: dict | None = None,
        artifact_name: str = "model.pt",
    ) -> bytes:
        model = model if model is not None else torchscript_bytes(
            FixedScores(logits_for(FOREST, 0.93))
        )
        self.put(artifact_key(version, artifact_name), model)
        self.put(metadata_key(version), json.dumps(metadata or make_metadata()).encode())
        return model

    def reference(self, version: str = "v1", checksum: str | None = None) -> ModelReference:
        return ModelReference(bucket=self.name, version=version, checksum=checksum)

    def cleanup(self) -> None:
        if self.fs.exists(self.name):
            self.fs.rm(self.name, recursive=True)


@pytest.fixture
def bucket():
    b = Bucket()
    yield b
    b.cleanup()


@pytest.fixture
def cache_dir(tmp_path) -> Path:
    return tmp_path / "artifact-cache"


@pytest.fixture
def resolver(bucket, cache_dir) -> ArtifactResolver:
    return ArtifactResolver(bucket.store, cache_dir)


@pytest.fixture
def manager(bucket, resolver) -> ModelLifecycleManager:
    return ModelLifecycleManager(
        resolver, bucket.reference(), device=torch.device("cpu"), fetch_timeout=10
    )


@pytest.fixture
def pipeline() -> PreprocessingPipeline:
    return PreprocessingPipeline()


@pytest.fixture
def orchestrator(manager, pipeline) -> RequestOrchestrator:
    return RequestOrchestrator(manager, pipeline, InferenceEngine(threshold=0.60))
