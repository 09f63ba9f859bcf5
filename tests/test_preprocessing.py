"""
Unit tests for upload validation and the versioned image transform.
"""

import io
import os

import pytest
import torch
from PIL import Image

from conftest import INPUT_SIZE, image_bytes, make_metadata
from landcover.serving.artifacts import ArtifactMetadata
from landcover.serving.errors import CorruptImage, PayloadTooLarge, UnsupportedMediaType
from landcover.serving.preprocessing import (
    Accepted,
    ImageTransform,
    InferenceRequest,
    PreprocessingPipeline,
    Rejected,
    normalize_media_type,
)


@pytest.fixture
def transform() -> ImageTransform:
    return ImageTransform.from_metadata(ArtifactMetadata.model_validate(make_metadata()))


# ============================================== #
# Validation order
# ============================================== #
def test_size_checked_before_media_type(pipeline, transform):
    request = InferenceRequest(b"x", "text/plain", declared_size=6 * 1024 * 1024)

    outcome = pipeline.validate(request, transform)

    assert isinstance(outcome, Rejected)
    assert isinstance(outcome.error, PayloadTooLarge)


def test_media_type_checked_before_decode(pipeline, transform):
    # Valid PNG bytes, but the declared type is not allowed
    request = InferenceRequest(image_bytes("PNG"), "text/plain")

    outcome = pipeline.validate(request, transform)

    assert isinstance(outcome.error, UnsupportedMediaType)
    assert outcome.error.details["allowed"] == ["image/jpeg", "image/png", "image/webp"]


def test_real_length_counts_when_declared_size_understated(transform):
    pipeline = PreprocessingPipeline(max_bytes=100)
    request = InferenceRequest(b"\x00" * 101, "image/png", declared_size=10)

    assert isinstance(pipeline.check_size(request), Rejected)


def test_size_at_limit_is_accepted():
    pipeline = PreprocessingPipeline(max_bytes=100)
    outcome = pipeline.check_size(InferenceRequest(b"\x00" * 100, "image/png", 100))

    assert outcome == Accepted(100)


def test_random_bytes_declared_jpeg_are_corrupt(pipeline, transform):
    request = InferenceRequest(b"\x13\x37\x00\xff\x42\x99\x10\x01\x02\x03", "image/jpeg")

    with pytest.raises(CorruptImage):
        pipeline.decode(request.payload, request.content_type, 10, transform)


def test_truncated_png_is_corrupt(pipeline, transform):
    buffer = io.BytesIO()
    Image.frombytes("RGB", (64, 64), os.urandom(64 * 64 * 3)).save(buffer, format="PNG")
    payload = buffer.getvalue()[: len(buffer.getvalue()) // 2]

    outcome = pipeline.validate(InferenceRequest(payload, "image/png"), transform)

    assert isinstance(outcome.error, CorruptImage)


def test_empty_payload_is_corrupt(pipeline, transform):
    outcome = pipeline.validate(InferenceRequest(b"", "image/png"), transform)

    assert isinstance(outcome.error, CorruptImage)


def test_unsupported_format_is_corrupt_whatever_the_declared_type(pipeline, transform):
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16)).save(buffer, format="BMP")

    outcome = pipeline.validate(InferenceRequest(buffer.getvalue(), "image/png"), transform)

    assert isinstance(outcome.error, CorruptImage)
    assert outcome.error.details["detected_format"] == "BMP"


def test_lying_content_type_still_decodes(pipeline, transform):
    # A PNG declared as JPEG is a valid image of a supported format
    outcome = pipeline.validate(InferenceRequest(image_bytes("PNG"), "image/jpeg"), transform)

    assert isinstance(outcome, Accepted)
    assert outcome.value.source_format == "PNG"


@pytest.mark.parametrize("fmt,media_type", [
    ("JPEG", "image/jpeg"),
    ("PNG", "image/png"),
    ("WEBP", "image/webp"),
])
def test_supported_formats_produce_model_shape(pipeline, transform, fmt, media_type):
    image = pipeline.decode(image_bytes(fmt), media_type, None, transform)

    assert image.shape == (3, *INPUT_SIZE)
    assert image.tensor.dtype == torch.float32
    assert image.original_size == (48, 40)


def test_multi_picture_jpeg_is_accepted(pipeline, transform):
    buffer = io.BytesIO()
    first = Image.new("RGB", (48, 40), (34, 139, 34))
    first.save(buffer, "MPO", save_all=True, append_images=[Image.new("RGB", (48, 40))])
    assert buffer.getvalue()[:2] == b"\xff\xd8"

    outcome = pipeline.validate(InferenceRequest(buffer.getvalue(), "image/jpeg"), transform)

    assert isinstance(outcome, Accepted)
    assert outcome.value.shape == (3, *INPUT_SIZE)
    assert outcome.value.original_size == (48, 40)


def test_grayscale_and_rgba_become_three_channels(pipeline, transform):
    for mode in ("L", "RGBA", "P"):
        buffer = io.BytesIO()
        Image.new(mode, (20, 30)).save(buffer, format="PNG")
        image = pipeline.decode(buffer.getvalue(), "image/png", None, transform)
        assert image.shape == (3, *INPUT_SIZE)


def test_media_type_normalization():
    assert normalize_media_type("Image/JPEG; charset=binary") == "image/jpeg"
    assert normalize_media_type("image/jpg") == "image/jpeg"
    assert normalize_media_type(None) == ""


# ============================================== #
# Transform parity with training
# ============================================== #
def test_normalization_matches_training_formula(pipeline, transform):
    color = (200, 100, 50)
    image = pipeline.decode(image_bytes("PNG", color=color), "image/png", None, transform)

    for channel, value in enumerate(color):
        expected = (value / 255.0 - transform.mean[channel]) / transform.std[channel]
        assert image.tensor[channel].mean().item() == pytest.approx(expected, abs=1e-5)


def test_resize_then_center_crop():
    transform = ImageTransform(
        input_size=(24, 24), mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5), resize_size=32
    )
    tensor = transform(Image.new("RGB", (100, 50)))

    assert tuple(tensor.shape) == (3, 24, 24)


def test_transform_comes_from_metadata():
    metadata = ArtifactMetadata.model_validate(make_metadata(input_size=[16, 20]))
    transform = ImageTransform.from_metadata(metadata)

    assert transform.input_shape == (3, 16, 20)
    assert transform.mean == tuple(metadata.mean)
