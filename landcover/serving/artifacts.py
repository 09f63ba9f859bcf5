# ==============================================================================
# Artifact Resolution
# ==============================================================================
#
# Fetches a named model version from the object store into a local, verified,
# ready-to-load form.
#
# Artifact Layout (in the store):
#   models/<version>/model.pt        TorchScript model
#   models/<version>/metadata.json   sidecar written by the training job
#
# The sidecar carries the preprocessing transform (input size, mean, std) and
# the ordered label set, so serving-time preprocessing is versioned with the
# model and cannot drift from the training-time transform.
#
# Local Cache:
#   <cache_dir>/<bucket>/<version>/<artifact-name>
#   <cache_dir>/<bucket>/<version>/metadata.json
#
#   A complete local copy that passes verification is returned without
#   touching the store. Files are written atomically (temp file + rename).
#
# Failures:
#   - ArtifactUnavailable: object absent in the store
#   - ArtifactCorrupt: checksum mismatch or unreadable metadata
#   - ArtifactTransportError: any other storage fault, or a fetch timeout
#
# The resolver never retries; a new load attempt is the caller's decision.
#
# ==============================================================================

import hashlib
import json
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from landcover._utils.logging import get_logger
from landcover.serving.errors import (
    ArtifactCorrupt,
    ArtifactError,
    ArtifactTransportError,
    ArtifactUnavailable,
)
from landcover.serving.storage import (
    METADATA_FILENAME,
    ObjectNotFound,
    ObjectStore,
    artifact_key,
    metadata_key,
)

logger = get_logger(__name__)

# Reserved for the abstain sentinel of the decision engine
RESERVED_LABELS = frozenset({"Uncertain"})


class ModelReference(BaseModel):
    """Identifies one model artifact in the store. Immutable."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    bucket: str = Field(..., min_length=1, description="Bucket or store root")
    version: str = Field(
        ..., pattern=r"^[A-Za-z0-9._-]+$", description="Model version tag"
    )
    artifact_name: str = Field(
        default="model.pt", pattern=r"^[A-Za-z0-9._-]+$", description="File name"
    )
    checksum: str | None = Field(
        None, description="Optional sha256 hex digest of the artifact"
    )

    @property
    def key(self) -> str:
        return artifact_key(self.version, self.artifact_name)

    @property
    def uri(self) -> str:
        return f"{self.bucket}/{self.key}"

    def with_version(self, version: str) -> "ModelReference":
        """Same artifact at another version. Unlike model_copy, this validates."""
        return ModelReference(**{**self.model_dump(), "version": version})


class ArtifactMetadata(BaseModel):
    """Sidecar metadata written next to the model by the training job."""

    model_config = ConfigDict(protected_namespaces=())

    architecture: str
    num_classes: int = Field(..., gt=0)
    trained_at: datetime | None = None
    val_accuracy: float | None = Field(None, ge=0.0, le=1.0)
    artifact_key: str | None = Field(
        None, description="Store key of the model file, if not the default"
    )

    # Versioned preprocessing transform
    labels: List[str]
    input_size: Tuple[int, int] = Field(..., description="(height, width)")
    resize_size: int | None = Field(
        None, gt=0, description="Shorter-side resize before center crop"
    )
    mean: Tuple[float, float, float]
    std: Tuple[float, float, float]

    @model_validator(mode="after")
    def _check_consistency(self) -> "ArtifactMetadata":
        if len(self.labels) != self.num_classes:
            raise ValueError(
                f"labels has {len(self.labels)} entries, num_classes is {self.num_classes}"
            )
        if len(set(self.labels)) != len(self.labels):
            raise ValueError("labels must be unique")
        reserved = RESERVED_LABELS.intersection(self.labels)
        if reserved:
            raise ValueError(f"labels use reserved names: {sorted(reserved)}")
        if min(self.input_size) <= 0:
            raise ValueError(f"input_size must be positive, got {self.input_size}")
        if min(self.std) <= 0:
            raise ValueError(f"std must be positive, got {self.std}")
        return self


def parse_metadata(raw: bytes) -> ArtifactMetadata:
    try:
        return ArtifactMetadata.model_validate(json.loads(raw))
    except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
        raise ArtifactCorrupt(f"Invalid artifact metadata: {e}") from e


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class ResolvedArtifact:
    """A local, verified copy of a model artifact."""

    reference: ModelReference
    path: Path
    metadata_path: Path
    metadata: ArtifactMetadata
    sha256: str
    from_cache: bool = False

    def discard(self) -> None:
        """Remove the local copy."""
        for p in (self.path, self.metadata_path):
            p.unlink(missing_ok=True)


class ArtifactResolver:
    """Resolves ModelReferences into ResolvedArtifacts through a local cache."""

    def __init__(self, store: ObjectStore, cache_dir: str | Path):
        self.store = store
        self.cache_dir = Path(cache_dir)

    def local_dir(self, ref: ModelReference) -> Path:
        return self.cache_dir / ref.bucket.strip("/").replace("/", "_") / ref.version

    def resolve(
        self, ref: ModelReference, timeout: float | None = None
    ) -> ResolvedArtifact:
        """Return a verified local copy of `ref`, fetching it only if needed."""
        cached = self._from_cache(ref)
        if cached is not None:
            logger.info(f"📁 Using cached artifact for [cyan]{ref.uri}[/cyan]")
            return cached

        logger.info(f"📦 Fetching artifact [cyan]{ref.uri}[/cyan]")
        if timeout is None:
            raw_metadata, metadata, blob = self._fetch(ref)
        else:
            pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="artifact")
            try:
                future = pool.submit(self._fetch, ref)
                raw_metadata, metadata, blob = future.result(timeout=timeout)
            except FuturesTimeout as e:
                raise ArtifactTransportError(
                    f"Timed out after {timeout}s fetching {ref.uri}",
                    details={"timeout_s": timeout},
                ) from e
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

        digest = hashlib.sha256(blob).hexdigest()
        self._verify_checksum(ref, digest)

        local_dir = self.local_dir(ref)
        local_dir.mkdir(parents=True, exist_ok=True)
        path = local_dir / ref.artifact_name
        metadata_path = local_dir / METADATA_FILENAME
        # Metadata last: its presence marks a complete copy
        _atomic_write(path, blob)
        _atomic_write(metadata_path, raw_metadata)

        logger.success(
            f"✅ Artifact resolved: {ref.uri} ({len(blob) / 1024:.1f} KiB, sha256={digest[:12]})"
        )
        return ResolvedArtifact(
            reference=ref,
            path=path,
            metadata_path=metadata_path,
            metadata=metadata,
            sha256=digest,
        )

    def _from_cache(self, ref: ModelReference) -> ResolvedArtifact | None:
        local_dir = self.local_dir(ref)
        path = local_dir / ref.artifact_name
        metadata_path = local_dir / METADATA_FILENAME
        if not (path.is_file() and metadata_path.is_file()):
            return None

        try:
            metadata = parse_metadata(metadata_path.read_bytes())
            digest = sha256_file(path)
            self._verify_checksum(ref, digest)
        except ArtifactCorrupt as e:
            logger.warning(f"⚠️ Discarding invalid cached artifact {path}: {e}")
            path.unlink(missing_ok=True)
            metadata_path.unlink(missing_ok=True)
            return None

        return ResolvedArtifact(
            reference=ref,
            path=path,
            metadata_path=metadata_path,
            metadata=metadata,
            sha256=digest,
            from_cache=True,
        )

    def _fetch(self, ref: ModelReference) -> Tuple[bytes, ArtifactMetadata, bytes]:
        raw_metadata = self._read(metadata_key(ref.version))
        metadata = parse_metadata(raw_metadata)
        blob = self._read(metadata.artifact_key or ref.key)
        return raw_metadata, metadata, blob

    def _read(self, key: str) -> bytes:
        try:
            return self.store.read(key)
        except ObjectNotFound as e:
            raise ArtifactUnavailable(
                f"Artifact object missing: {key}", details={"key": key}
            ) from e
        except ArtifactError:
            raise
        except Exception as e:
            raise ArtifactTransportError(
                f"Storage fault reading {key}: {e}", details={"key": key}
            ) from e

    @staticmethod
    def _verify_checksum(ref: ModelReference, digest: str) -> None:
        if ref.checksum and digest != ref.checksum.lower():
            raise ArtifactCorrupt(
                f"Checksum mismatch for {ref.uri}",
                details={"expected": ref.checksum.lower(), "actual": digest},
            )


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
