# ==============================================================================
# Preprocessing Pipeline
# ==============================================================================
#
# Validates and decodes untrusted uploads into fixed-shape model input tensors.
#
# Validation Order (each a distinct, independently testable failure):
#   1. Size: declared size (and real payload length) <= max_upload_bytes
#      -> PayloadTooLarge
#   2. Media type: declared content type in the allow-list
#      -> UnsupportedMediaType
#   3. Decoding: bytes form a structurally valid JPEG/PNG/WEBP image,
#      whatever the client declared -> CorruptImage
#   4. Transform: RGB, resize to the model's input size, normalize with the
#      model's mean/std -> tensor [3, H, W] float32
#
# Each check returns a discriminated outcome (Accepted | Rejected) instead of
# raising, so the order of checks is an explicit branch in validate().
#
# Normalization:
#   - Transform parameters come from the artifact metadata sidecar
#   - Same semantics as the training transform: ToTensor() scales to [0, 1],
#     then (x - mean) / std per channel
#
# ==============================================================================

import io
import struct
from dataclasses import dataclass
from functools import cached_property
from typing import FrozenSet, Generic, Tuple, TypeVar, Union

import torch
from PIL import Image, UnidentifiedImageError
from torchvision import transforms

from landcover._utils.logging import get_logger
from landcover.serving.artifacts import ArtifactMetadata
from landcover.serving.errors import (
    CorruptImage,
    PayloadTooLarge,
    UnsupportedMediaType,
    ValidationError,
)

logger = get_logger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_MEDIA_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})

# Pillow format name -> media type
SUPPORTED_FORMATS = {
    "JPEG": "image/jpeg",
    # Multi-picture JPEG (phone cameras); decodes to its first frame
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}

MEDIA_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}

T = TypeVar("T")


# ============================================== #
# 🔹 SECTION: Request and result types
# ============================================== #
@dataclass(frozen=True)
class InferenceRequest:
    """Raw upload as received from the caller."""

    payload: bytes
    content_type: str | None
    declared_size: int | None = None

    @property
    def size(self) -> int:
        # A client may understate its declared size
        return max(self.declared_size or 0, len(self.payload))


@dataclass(frozen=True)
class DecodedImage:
    """Validated, normalized image tensor in canonical [3, H, W] layout."""

    tensor: torch.Tensor
    source_format: str
    original_size: Tuple[int, int]  # (width, height)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.tensor.shape)


@dataclass(frozen=True)
class Accepted(Generic[T]):
    value: T


@dataclass(frozen=True)
class Rejected:
    error: ValidationError


Outcome = Union[Accepted[T], Rejected]


# ============================================== #
# 🔹 SECTION: Transform
# ============================================== #
@dataclass(frozen=True)
class ImageTransform:
    """Serving-time copy of the training transform, versioned with the model."""

    input_size: Tuple[int, int]  # (height, width)
    mean: Tuple[float, float, float]
    std: Tuple[float, float, float]
    resize_size: int | None = None

    @classmethod
    def from_metadata(cls, metadata: ArtifactMetadata) -> "ImageTransform":
        return cls(
            input_size=tuple(metadata.input_size),
            mean=tuple(metadata.mean),
            std=tuple(metadata.std),
            resize_size=metadata.resize_size,
        )

    @property
    def input_shape(self) -> Tuple[int, int, int]:
        return (3, *self.input_size)

    @cached_property
    def pipeline(self) -> transforms.Compose:
        if self.resize_size:
            # Shorter side to resize_size, then center crop
            geometry = [
                transforms.Resize(self.resize_size),
                transforms.CenterCrop(self.input_size),
            ]
        else:
            geometry = [transforms.Resize(self.input_size)]
        return transforms.Compose(
            [
                *geometry,
                transforms.ToTensor(),
                transforms.Normalize(mean=list(self.mean), std=list(self.std)),
            ]
        )

    def __call__(self, image: Image.Image) -> torch.Tensor:
        if image.mode != "RGB":
            image = image.convert("RGB")
        return self.pipeline(image)


def normalize_media_type(content_type: str | None) -> str:
    """'Image/JPEG; charset=binary' -> 'image/jpeg'."""
    if not content_type:
        return ""
    media_type = content_type.split(";", 1)[0].strip().lower()
    return MEDIA_TYPE_ALIASES.get(media_type, media_type)


# ============================================== #
# 🔹 SECTION: Pipeline
# ============================================== #
class PreprocessingPipeline:
    """Validates uploads in a fixed order and produces model input tensors."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        allowed_media_types: FrozenSet[str] = DEFAULT_MEDIA_TYPES,
    ):
        self.max_bytes = max_bytes
        self.allowed_media_types = frozenset(
            normalize_media_type(m) for m in allowed_media_types
        )

    def check_size(self, request: InferenceRequest) -> Outcome[int]:
        size = request.size
        if size > self.max_bytes:
            return Rejected(
                PayloadTooLarge(
                    f"Upload of {size} bytes exceeds limit of {self.max_bytes} bytes",
                    details={"size": size, "limit": self.max_bytes},
                )
            )
        return Accepted(size)

    def check_media_type(self, request: InferenceRequest) -> Outcome[str]:
        media_type = normalize_media_type(request.content_type)
        if media_type not in self.allowed_media_types:
            return Rejected(
                UnsupportedMediaType(
                    f"Unsupported media type '{request.content_type}'",
                    details={
                        "media_type": request.content_type,
                        "allowed": sorted(self.allowed_media_types),
                    },
                )
            )
        return Accepted(media_type)

    def decode_image(self, payload: bytes) -> Outcome[Image.Image]:
        """Decode and verify the byte stream, ignoring the declared type."""
        try:
            with Image.open(io.BytesIO(payload)) as probe:
                fmt = probe.format
                probe.verify()

            media_type = SUPPORTED_FORMATS.get(fmt)
            if media_type is None or media_type not in self.allowed_media_types:
                return Rejected(
                    CorruptImage(
                        f"Payload is not a supported image format (detected {fmt})",
                        details={"detected_format": fmt},
                    )
                )

            # verify() leaves the image unusable; reopen and fully decode
            image = Image.open(io.BytesIO(payload))
            image.load()
        except Image.DecompressionBombError as e:
            return Rejected(CorruptImage(f"Image too large to decode: {e}"))
        except (
            UnidentifiedImageError,
            OSError,
            EOFError,
            SyntaxError,
            ValueError,
            struct.error,
        ) as e:
            return Rejected(
                CorruptImage(
                    "Payload could not be decoded as an image",
                    details={"reason": str(e)},
                )
            )
        return Accepted(image)

    def validate(
        self, request: InferenceRequest, transform: ImageTransform
    ) -> Outcome[DecodedImage]:
        """Run every check in order, stopping at the first rejection."""
        for check in (self.check_size, self.check_media_type):
            outcome = check(request)
            if isinstance(outcome, Rejected):
                return outcome

        outcome = self.decode_image(request.payload)
        if isinstance(outcome, Rejected):
            return outcome
        image = outcome.value

        declared = normalize_media_type(request.content_type)
        detected = SUPPORTED_FORMATS[image.format]
        if declared != detected:
            logger.debug(f"Declared {declared} but payload is {detected}")

        try:
            tensor = transform(image)
        except (OSError, ValueError) as e:
            return Rejected(
                CorruptImage(
                    "Image could not be converted to model input",
                    details={"reason": str(e)},
                )
            )
        finally:
            image.close()

        if tuple(tensor.shape) != transform.input_shape:
            return Rejected(
                CorruptImage(
                    f"Transformed image has shape {tuple(tensor.shape)}, "
                    f"expected {transform.input_shape}"
                )
            )

        return Accepted(
            DecodedImage(
                tensor=tensor,
                source_format=image.format,
                original_size=image.size,
            )
        )

    def decode(
        self,
        payload: bytes,
        content_type: str | None,
        declared_size: int | None,
        transform: ImageTransform,
    ) -> DecodedImage:
        """Validate and decode, raising the first validation error."""
        request = InferenceRequest(payload, content_type, declared_size)
        outcome = self.validate(request, transform)
        if isinstance(outcome, Rejected):
            raise outcome.error
        return outcome.value
