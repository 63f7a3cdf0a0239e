"""Image preprocessing pipeline.

Decoding (with EXIF orientation), orientation normalization, resizing,
conversion to the BGRA inference pixel buffer, and conversion to the float
tensor a classification model consumes.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image, UnidentifiedImageError

from foodsnap.ml.errors import InvalidImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112


class Orientation(IntEnum):
    """EXIF orientation tags: how the stored pixels relate to upright display."""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


@dataclass(frozen=True)
class RawImage:
    """A decoded bitmap plus its orientation tag.

    ``pixels`` is an HxWx3 RGB uint8 array. It may be empty when the source had
    no decodable pixel data.
    """

    pixels: NDArray[np.uint8]
    orientation: Orientation = Orientation.UP
    pixel_format: str = "RGB"

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @property
    def has_pixels(self) -> bool:
        return self.pixels.ndim == 3 and self.pixels.size > 0 and self.pixels.shape[2] == 3

    @property
    def is_upright(self) -> bool:
        return self.orientation == Orientation.UP


@dataclass(frozen=True)
class PixelBuffer:
    """Fixed-layout 32-bit BGRA buffer, one row of ``bytes_per_row`` per line."""

    data: NDArray[np.uint8]
    width: int
    height: int
    pixel_format: str = "BGRA32"

    @property
    def bytes_per_row(self) -> int:
        return self.width * 4

    def to_rgb(self) -> NDArray[np.uint8]:
        """Drop alpha and reorder channels back to HxWx3 RGB."""
        return np.ascontiguousarray(self.data[:, :, 2::-1])


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> RawImage:
    """Decode raw image bytes into a RawImage, keeping the EXIF orientation tag.

    The pixels are returned as stored; orientation is applied later by
    :func:`normalize_orientation`.

    Raises:
        InvalidImageError: If the bytes cannot be decoded or exceed ``max_pixels``.
    """
    if not image_bytes:
        raise InvalidImageError
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if max_pixels is not None and img.width * img.height > max_pixels:
                logger.warning("Rejected %dx%d image (limit %d pixels)", img.width, img.height, max_pixels)
                raise InvalidImageError
            tag = img.getexif().get(EXIF_ORIENTATION_TAG, Orientation.UP)
            pixels = np.asarray(img.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImageError from exc

    try:
        orientation = Orientation(int(tag))
    except (TypeError, ValueError):
        orientation = Orientation.UP
    return RawImage(pixels=pixels, orientation=orientation)


# ---------------------------------------------------------------------------
# Orientation
# ---------------------------------------------------------------------------


def _swap_axes(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    return np.transpose(pixels, (1, 0, 2))


_UPRIGHT_TRANSFORMS = {
    Orientation.UP_MIRRORED: np.fliplr,
    Orientation.DOWN: lambda p: np.rot90(p, 2),
    Orientation.DOWN_MIRRORED: np.flipud,
    Orientation.LEFT_MIRRORED: _swap_axes,
    Orientation.RIGHT: lambda p: np.rot90(p, -1),
    Orientation.RIGHT_MIRRORED: lambda p: np.rot90(_swap_axes(p), 2),
    Orientation.LEFT: lambda p: np.rot90(p, 1),
}


def normalize_orientation(image: RawImage) -> RawImage:
    """Re-render an image so its pixels are upright.

    Upright images are returned unchanged (same object). If the re-render runs
    out of memory the original image is returned and a warning is logged.
    """
    if image.is_upright or not image.has_pixels:
        return image

    transform = _UPRIGHT_TRANSFORMS[image.orientation]
    try:
        upright = np.ascontiguousarray(transform(image.pixels))
    except MemoryError:
        logger.warning(
            "Could not re-render %dx%d image with orientation %s; using it unnormalized",
            image.width,
            image.height,
            image.orientation.name,
        )
        return image
    return RawImage(pixels=upright, orientation=Orientation.UP, pixel_format=image.pixel_format)


# ---------------------------------------------------------------------------
# Resizing and buffer conversion
# ---------------------------------------------------------------------------


def resize_image(pixels: NDArray[np.uint8], size: tuple[int, int]) -> NDArray[np.uint8] | None:
    """Scale an RGB array to exactly ``size`` (width, height).

    Returns None if the target is not positive or rendering fails.
    """
    width, height = size
    if width <= 0 or height <= 0 or pixels.size == 0:
        return None
    if pixels.shape[1] == width and pixels.shape[0] == height:
        return pixels
    try:
        source = Image.fromarray(np.ascontiguousarray(pixels))
        resized = source.resize((width, height), Image.Resampling.LANCZOS)
        return np.asarray(resized, dtype=np.uint8)
    except (ValueError, TypeError, OSError, MemoryError):
        logger.warning("Failed to resize %s array to %dx%d", pixels.shape, width, height)
        return None


def to_pixel_buffer(pixels: NDArray[np.uint8]) -> PixelBuffer | None:
    """Convert an HxWx3 RGB array to an opaque BGRA pixel buffer.

    Returns None if the array is not a non-empty RGB image.
    """
    if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.size == 0:
        return None
    height, width = int(pixels.shape[0]), int(pixels.shape[1])
    try:
        data = np.empty((height, width, 4), dtype=np.uint8)
    except MemoryError:
        return None
    data[:, :, 0] = pixels[:, :, 2]
    data[:, :, 1] = pixels[:, :, 1]
    data[:, :, 2] = pixels[:, :, 0]
    data[:, :, 3] = 255
    return PixelBuffer(data=data, width=width, height=height)


def to_model_tensor(
    pixels: NDArray[np.uint8],
    mean: Sequence[float],
    std: Sequence[float],
    layout: Literal["nchw", "nhwc"] = "nchw",
) -> NDArray[np.float32]:
    """Scale to [0, 1], normalize per channel, and add the batch dimension."""
    tensor = pixels.astype(np.float32) / 255.0
    tensor = (tensor - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    if layout == "nchw":
        tensor = np.transpose(tensor, (2, 0, 1))
    return np.expand_dims(tensor, axis=0).astype(np.float32)
