"""
Unit tests for the fsspec-backed object store.
"""

import fsspec
import pytest

from landcover.serving.storage import (
    FsspecObjectStore,
    ObjectNotFound,
    artifact_key,
    metadata_key,
)


def test_key_convention():
    assert artifact_key("v3", "model.pt") == "models/v3/model.pt"
    assert metadata_key("v3") == "models/v3/metadata.json"


def test_read_round_trip(bucket):
    bucket.put("models/v1/model.pt", b"\x00\x01weights")

    assert bucket.store.read("models/v1/model.pt") == b"\x00\x01weights"


def test_absent_object(bucket):
    with pytest.raises(ObjectNotFound) as exc_info:
        bucket.store.read("models/v9/model.pt")
    assert exc_info.value.key == "models/v9/model.pt"

    with pytest.raises(ObjectNotFound):
        bucket.store.etag("models/v9/model.pt")


def test_local_filesystem_store(tmp_path):
    (tmp_path / "models" / "v1").mkdir(parents=True)
    (tmp_path / "models" / "v1" / "metadata.json").write_bytes(b"{}")
    store = FsspecObjectStore(fsspec.filesystem("file"), str(tmp_path))

    assert store.read("models/v1/metadata.json") == b"{}"
    assert store.etag("models/v1/metadata.json") is None
    assert repr(store).startswith("FsspecObjectStore(file://")
