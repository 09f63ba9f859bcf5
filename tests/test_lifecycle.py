"""
Unit tests for the model lifecycle state machine and readiness gate.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import torch

from conftest import FOREST, LABELS, FixedScores, logits_for, torchscript_bytes
from landcover.serving.errors import (
    ArtifactCorrupt,
    ArtifactUnavailable,
    LoadFailed,
    NotReady,
)
from landcover.serving.lifecycle import (
    ModelLifecycleManager,
    ServingState,
    load_torchscript,
)


def test_initial_state(manager):
    assert manager.current() == (ServingState.UNINITIALIZED, None)
    with pytest.raises(NotReady):
        manager.await_ready(0)


def test_start_loads_model(bucket, manager):
    bucket.publish()

    assert manager.start() is ServingState.READY

    state, model = manager.current()
    assert state is ServingState.READY
    assert model.labels == tuple(LABELS)
    assert model.input_shape == (3, 32, 32)
    assert model.reference.version == "v1"
    assert manager.await_ready(0) is model


def test_start_is_idempotent(bucket, manager):
    bucket.publish()
    manager.start()
    _, first = manager.current()
    reads = len(bucket.store.reads)

    assert manager.start() is ServingState.READY
    assert manager.current()[1] is first
    assert len(bucket.store.reads) == reads


def test_missing_artifact_fails(bucket, manager):
    assert manager.start() is ServingState.FAILED

    assert manager.current() == (ServingState.FAILED, None)
    assert isinstance(manager.last_error, ArtifactUnavailable)
    with pytest.raises(LoadFailed) as exc_info:
        manager.await_ready(10)
    assert exc_info.value.details["cause"] == "artifact_unavailable"


def test_failed_state_is_terminal_until_reload(bucket, manager):
    manager.start()
    bucket.publish()

    # No automatic retry
    assert manager.start() is ServingState.FAILED
    assert manager.reload() is ServingState.READY
    assert manager.last_error is None


def test_reload_from_ready_reloads(bucket, manager):
    bucket.publish()
    manager.start()
    _, first = manager.current()

    assert manager.reload() is ServingState.READY
    _, second = manager.current()
    assert second is not first


def test_reload_switches_version(bucket, manager):
    bucket.publish("v1")
    bucket.publish("v2", model=torchscript_bytes(FixedScores(logits_for(0, 0.99))))
    manager.start()

    state = manager.reload(bucket.reference("v2"))

    assert state is ServingState.READY
    assert manager.current()[1].reference.version == "v2"


def test_wrong_output_width_is_corrupt(bucket, manager):
    bucket.publish(model=torchscript_bytes(FixedScores(torch.zeros(3))))

    assert manager.start() is ServingState.FAILED
    assert isinstance(manager.last_error, ArtifactCorrupt)
    # The bad local copy is dropped so a reload fetches again
    assert not (manager.resolver.local_dir(manager.reference) / "model.pt").exists()


def test_garbage_model_bytes_are_corrupt(bucket, manager):
    bucket.publish(model=b"definitely not torchscript")

    assert manager.start() is ServingState.FAILED
    assert isinstance(manager.last_error, ArtifactCorrupt)


# ============================================== #
# Concurrency
# ============================================== #
class GatedLoader:
    """Loader that blocks until released and counts its invocations."""

    def __init__(self):
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, artifact, device):
        self.calls += 1
        self.entered.set()
        self.release.wait(5)
        return load_torchscript(artifact, device)


@pytest.fixture
def gated(bucket, resolver):
    bucket.publish()
    loader = GatedLoader()
    manager = ModelLifecycleManager(
        resolver, bucket.reference(), loader=loader, device=torch.device("cpu")
    )
    yield manager, loader
    loader.release.set()


def test_concurrent_starts_load_once(gated):
    manager, loader = gated

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(manager.start) for _ in range(4)]
        assert loader.entered.wait(5)
        time.sleep(0.05)
        loader.release.set()
        states = [f.result(timeout=5) for f in futures]

    assert states == [ServingState.READY] * 4
    assert loader.calls == 1


def test_reload_during_load_joins_it(gated):
    manager, loader = gated
    manager.start_in_background()
    assert loader.entered.wait(5)

    joiner = ThreadPoolExecutor(max_workers=1).submit(manager.reload)
    time.sleep(0.05)
    loader.release.set()

    assert joiner.result(timeout=5) is ServingState.READY
    assert loader.calls == 1


def test_reload_of_other_version_during_load_loads_it_next(bucket, gated):
    manager, loader = gated
    bucket.publish("v2", model=torchscript_bytes(FixedScores(logits_for(0, 0.99))))
    manager.start_in_background()
    assert loader.entered.wait(5)

    joiner = ThreadPoolExecutor(max_workers=1).submit(manager.reload, bucket.reference("v2"))
    time.sleep(0.05)
    loader.release.set()

    assert joiner.result(timeout=5) is ServingState.READY
    assert loader.calls == 2
    assert manager.reference.version == "v2"
    assert manager.current()[1].reference.version == "v2"


def test_not_ready_while_loading(gated):
    manager, loader = gated
    manager.start_in_background()
    assert loader.entered.wait(5)

    assert manager.current() == (ServingState.LOADING, None)
    started = time.monotonic()
    with pytest.raises(NotReady):
        manager.await_ready(0.05)
    assert time.monotonic() - started < 2


def test_await_ready_wakes_on_publish(gated):
    manager, loader = gated
    manager.start_in_background()
    assert loader.entered.wait(5)

    waiter = ThreadPoolExecutor(max_workers=1).submit(manager.await_ready, 5)
    loader.release.set()

    model = waiter.result(timeout=5)
    assert model.labels[FOREST] == "Forest"
