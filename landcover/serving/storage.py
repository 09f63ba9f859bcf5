# ==============================================================================
# Artifact Object Store
# ==============================================================================
#
# Read-by-key access to the object store holding trained model artifacts.
#
# The serving core only needs three things from the store:
#   - byte-exact retrieval of an object
#   - a way to detect that an object is absent
#   - (optionally) an ETag for integrity checks and diagnostics
#
# Any fsspec filesystem qualifies:
#   - s3fs.S3FileSystem for S3/MinIO (production)
#   - "file" or "memory" filesystems for local development and tests
#
# Key Convention:
#   models/<version>/<artifact-name>
#   models/<version>/metadata.json
#
# Environment Variables (S3):
#   - AWS_ACCESS_KEY_ID: S3/MinIO access key
#   - AWS_SECRET_ACCESS_KEY: S3/MinIO secret key
#
# ==============================================================================

import os
from typing import Protocol

import fsspec
import s3fs
from fsspec import AbstractFileSystem

from landcover._utils.logging import get_logger

logger = get_logger(__name__)

METADATA_FILENAME = "metadata.json"


class ObjectNotFound(Exception):
    """The requested key does not exist in the store."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


class ObjectStore(Protocol):
    def read(self, key: str) -> bytes: ...

    def etag(self, key: str) -> str | None: ...


def artifact_key(version: str, name: str) -> str:
    return f"models/{version}/{name}"


def metadata_key(version: str) -> str:
    return artifact_key(version, METADATA_FILENAME)


class FsspecObjectStore:
    """Object store backed by an fsspec filesystem rooted at a bucket/prefix."""

    def __init__(self, fs: AbstractFileSystem, root: str):
        self.fs = fs
        self.root = root.rstrip("/")

    def _path(self, key: str) -> str:
        return f"{self.root}/{key.lstrip('/')}"

    def read(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with self.fs.open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise ObjectNotFound(key) from e

    def etag(self, key: str) -> str | None:
        try:
            info = self.fs.info(self._path(key))
        except FileNotFoundError as e:
            raise ObjectNotFound(key) from e
        etag = info.get("ETag") or info.get("etag")
        return etag.strip('"') if etag else None

    def __repr__(self) -> str:
        protocol = self.fs.protocol
        if isinstance(protocol, (tuple, list)):
            protocol = protocol[0]
        return f"FsspecObjectStore({protocol}://{self.root})"


def build_object_store(config) -> FsspecObjectStore:
    """Build the object store described by a ServingConfig."""
    if config.storage_protocol == "s3":
        fs = s3fs.S3FileSystem(
            anon=False,
            key=os.getenv("AWS_ACCESS_KEY_ID"),
            secret=os.getenv("AWS_SECRET_ACCESS_KEY"),
            endpoint_url=f"{config.storage_scheme}://{config.storage_endpoint}",
            client_kwargs={
                "verify": False,  # MinIO in-cluster uses self-signed certs
            },
        )
    else:
        fs = fsspec.filesystem(config.storage_protocol)

    store = FsspecObjectStore(fs, config.model_bucket)
    logger.info(f"Object store: [cyan]{store!r}[/cyan]")
    return store
