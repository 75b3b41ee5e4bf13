"""Image preprocessing pipeline.

Decodes uploaded bytes into a ``RasterImage`` (pixels plus EXIF orientation),
normalizes orientation, and converts pixels into model input tensors.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import ExifTags, Image, UnidentifiedImageError

from anidex.ml.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)


class ImageOrientation(IntEnum):
    """EXIF orientation of the stored pixels relative to display orientation."""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8

    @classmethod
    def from_exif(cls, value: object, *, strict: bool = False) -> ImageOrientation:
        """Map a raw EXIF orientation value, falling back to UP when unknown.

        Raises:
            InvalidImageError: If ``strict`` and the value is not a known orientation.
        """
        try:
            return cls(int(value))  # type: ignore[call-overload]
        except (TypeError, ValueError):
            if strict:
                raise InvalidImageError(f"Unrecognized image orientation: {value!r}") from None
            logger.warning("Unrecognized image orientation %r, assuming upright", value)
            return cls.UP


@dataclass(frozen=True)
class RasterImage:
    """A decoded image and the orientation its pixels are stored in."""

    pixels: NDArray[np.uint8]
    orientation: ImageOrientation = ImageOrientation.UP

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def upright(self) -> NDArray[np.uint8]:
        """Return the pixels transformed to display orientation."""
        return _ORIENTATION_TRANSFORMS[ImageOrientation.from_exif(self.orientation)](self.pixels)


_ORIENTATION_TRANSFORMS = {
    ImageOrientation.UP: lambda p: p,
    ImageOrientation.UP_MIRRORED: np.fliplr,
    ImageOrientation.DOWN: lambda p: np.rot90(p, 2),
    ImageOrientation.DOWN_MIRRORED: np.flipud,
    ImageOrientation.LEFT_MIRRORED: lambda p: p.transpose(1, 0, 2),
    ImageOrientation.RIGHT: lambda p: np.rot90(p, -1),
    ImageOrientation.RIGHT_MIRRORED: lambda p: np.rot90(p, 2).transpose(1, 0, 2),
    ImageOrientation.LEFT: lambda p: np.rot90(p, 1),
}


def validate_pixels(pixels: object) -> NDArray[np.uint8]:
    """Check that ``pixels`` is a usable RGB buffer, promoting grayscale to RGB.

    Raises:
        InvalidImageError: If the buffer is empty or has an unexpected shape or dtype.
    """
    if not isinstance(pixels, np.ndarray):
        raise InvalidImageError(f"Expected a numpy pixel buffer, got {type(pixels).__name__}")
    if pixels.dtype != np.uint8:
        raise InvalidImageError(f"Expected uint8 pixels, got {pixels.dtype}")
    if pixels.ndim == 2:
        pixels = np.stack([pixels] * 3, axis=-1)
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise InvalidImageError(f"Expected HxWx3 pixels, got shape {pixels.shape}")
    if pixels.size == 0:
        raise InvalidImageError("Image has no pixels")
    return pixels


def decode_image(
    image_bytes: bytes,
    *,
    max_pixels: int,
    strict_orientation: bool = False,
) -> RasterImage:
    """Decode raw image bytes into an RGB raster and its EXIF orientation.

    The pixels are kept as stored; call ``RasterImage.upright()`` to apply
    the orientation.

    Raises:
        InvalidImageError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise InvalidImageError("Empty image upload")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise InvalidImageError(f"Image is {width}x{height}, exceeds limit of {max_pixels} pixels")
            raw_orientation = img.getexif().get(ExifTags.Base.Orientation, ImageOrientation.UP)
            pixels = np.asarray(img.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise InvalidImageError(f"Could not decode image: {exc}") from exc

    orientation = ImageOrientation.from_exif(raw_orientation, strict=strict_orientation)
    return RasterImage(pixels=validate_pixels(pixels), orientation=orientation)


def preprocess_for_classification(
    image: NDArray[np.uint8],
    input_size: int,
    mean: tuple[float, float, float] = IMAGENET_MEAN,
    std: tuple[float, float, float] = IMAGENET_STD,
) -> NDArray[np.float32]:
    """Resize and normalize an upright RGB image for a classification model.

    Returns:
        Float32 tensor of shape (1, 3, input_size, input_size).
    """
    resized = Image.fromarray(np.ascontiguousarray(image)).resize(
        (input_size, input_size),
        Image.Resampling.BILINEAR,
    )
    tensor = np.asarray(resized, dtype=np.float32) / 255.0
    tensor = (tensor - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
