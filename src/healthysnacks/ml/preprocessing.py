"""Image preprocessing pipeline.

Handles decoding, EXIF orientation, color space conversion, size
validation, crop/scale to the model input size, and conversion to
numpy tensors for model input.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG: int = 0x0112


class ImageDecodeError(ValueError):
    """The input could not be turned into an RGB image."""


class Orientation(IntEnum):
    """EXIF orientation values (TIFF tag 274)."""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


class CropScaleMode(StrEnum):
    CENTER_CROP = "center_crop"
    SCALE_FIT = "scale_fit"
    SCALE_FILL = "scale_fill"


# Transposes that bring an image stored with the given orientation upright.
_ORIENTATION_TRANSPOSES: dict[Orientation, tuple[Image.Transpose, ...]] = {
    Orientation.UP: (),
    Orientation.UP_MIRRORED: (Image.Transpose.FLIP_LEFT_RIGHT,),
    Orientation.DOWN: (Image.Transpose.ROTATE_180,),
    Orientation.DOWN_MIRRORED: (Image.Transpose.FLIP_TOP_BOTTOM,),
    Orientation.LEFT_MIRRORED: (Image.Transpose.TRANSPOSE,),
    Orientation.RIGHT: (Image.Transpose.ROTATE_270,),
    Orientation.RIGHT_MIRRORED: (Image.Transpose.TRANSVERSE,),
    Orientation.LEFT: (Image.Transpose.ROTATE_90,),
}


@dataclass(frozen=True)
class PickedImage:
    """An acquired image plus the orientation it was stored with."""

    image: Image.Image
    orientation: Orientation = Orientation.UP

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size


def _check_pixels(width: int, height: int, max_pixels: int | None) -> None:
    if max_pixels is not None and width * height > max_pixels:
        raise ImageDecodeError(f"Image has {width * height} pixels, limit is {max_pixels}")


def _read_orientation(image: Image.Image) -> Orientation:
    raw = image.getexif().get(EXIF_ORIENTATION_TAG, Orientation.UP)
    try:
        return Orientation(int(raw))
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid EXIF orientation %r", raw)
        return Orientation.UP


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> PickedImage:
    """Decode raw image bytes into an RGB image with its EXIF orientation.

    Args:
        image_bytes: Raw file bytes (any format Pillow supports).
        max_pixels: Reject images with more pixels than this.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image data")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        _check_pixels(width, height, max_pixels)
        orientation = _read_orientation(image)
        rgb = image.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc
    return PickedImage(image=rgb, orientation=orientation)


def to_picked_image(source: object, max_pixels: int | None = None) -> PickedImage:
    """Convert whatever an image picker handed over into a PickedImage.

    Accepts a PickedImage, a PIL image, an HxW or HxWx3/4 uint8 array, or raw bytes.
    """
    if isinstance(source, PickedImage):
        _check_pixels(*source.size, max_pixels)
        return source
    if isinstance(source, (bytes, bytearray)):
        return decode_image(bytes(source), max_pixels)
    if isinstance(source, Image.Image):
        _check_pixels(source.width, source.height, max_pixels)
        return PickedImage(image=source.convert("RGB"), orientation=_read_orientation(source))
    if isinstance(source, np.ndarray):
        if source.ndim not in (2, 3) or source.size == 0:
            raise ImageDecodeError(f"Unsupported array shape {source.shape}")
        _check_pixels(source.shape[1], source.shape[0], max_pixels)
        try:
            image = Image.fromarray(np.ascontiguousarray(source, dtype=np.uint8))
        except (TypeError, ValueError) as exc:
            raise ImageDecodeError(f"Cannot convert array: {exc}") from exc
        return PickedImage(image=image.convert("RGB"))
    raise ImageDecodeError(f"Unsupported image source: {type(source).__name__}")


def apply_orientation(image: Image.Image, orientation: Orientation) -> Image.Image:
    """Rotate/flip ``image`` so that it is displayed upright."""
    for transpose in _ORIENTATION_TRANSPOSES[orientation]:
        image = image.transpose(transpose)
    return image


def crop_and_scale(image: Image.Image, size: tuple[int, int], mode: CropScaleMode) -> Image.Image:
    """Fit ``image`` to ``size`` (width, height) using the given policy."""
    width, height = size
    if mode is CropScaleMode.SCALE_FILL:
        return image.resize(size, Image.Resampling.BILINEAR)

    if mode is CropScaleMode.SCALE_FIT:
        scale = min(width / image.width, height / image.height)
        scaled = image.resize(
            (max(1, round(image.width * scale)), max(1, round(image.height * scale))),
            Image.Resampling.BILINEAR,
        )
        canvas = Image.new("RGB", size)
        canvas.paste(scaled, ((width - scaled.width) // 2, (height - scaled.height) // 2))
        return canvas

    side = min(image.width, image.height)
    left = (image.width - side) // 2
    top = (image.height - side) // 2
    square = image.crop((left, top, left + side, top + side))
    return square.resize(size, Image.Resampling.BILINEAR)


def to_tensor(
    image: Image.Image,
    mean: Sequence[float],
    std: Sequence[float],
) -> NDArray[np.float32]:
    """Convert an RGB image to a normalized (1, 3, H, W) float32 tensor."""
    array = np.asarray(image, dtype=np.float32) / 255.0
    array = (array - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(array.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
