"""Image decoding and downscaling.

Pillow does the decoding: EXIF orientation is applied and every mode is
converted to RGB before the pixels become a read-only numpy array. Oversized
images are shrunk with an area-average filter before scanning.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageOps, UnidentifiedImageError

from haarface.ml.errors import DecodeFailureError, InvalidImageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMAGE_PIXELS: int = 16_777_216


@dataclass(frozen=True)
class RasterImage:
    """Decoded RGB image. ``pixels`` is an HxWx3 uint8 array."""

    pixels: NDArray[np.uint8]

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def pixel(self, x: int, y: int) -> tuple[int, int, int]:
        r, g, b = self.pixels[y, x]
        return int(r), int(g), int(b)

    @classmethod
    def from_array(cls, pixels: NDArray[np.uint8]) -> RasterImage:
        """Wrap an RGB array, rejecting anything that is not a non-empty HxWx3 image."""
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise InvalidImageError(f"Expected an HxWx3 RGB array, got shape {pixels.shape}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise InvalidImageError("Image has zero dimensions")
        # A view, so the caller's array keeps its own flags.
        array = np.ascontiguousarray(pixels, dtype=np.uint8).view()
        array.flags.writeable = False
        return cls(array)


def decode_image(source: str | Path | bytes, max_pixels: int = DEFAULT_MAX_IMAGE_PIXELS) -> RasterImage:
    """Decode an image file or raw image bytes into an RGB ``RasterImage``.

    Args:
        source: Path to an image file, or the file's raw bytes.
        max_pixels: Upper bound on width * height.

    Raises:
        InvalidImageError: If the image cannot be read or decoded, has zero
            dimensions, or exceeds ``max_pixels``.
    """
    stream = io.BytesIO(source) if isinstance(source, bytes) else source
    try:
        with Image.open(stream) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise InvalidImageError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
            oriented = ImageOps.exif_transpose(img)
            pixels = np.asarray(oriented.convert("RGB"), dtype=np.uint8)
    except FileNotFoundError as exc:
        raise InvalidImageError(f"Image file not found: {source}") from exc
    except UnidentifiedImageError as exc:
        raise InvalidImageError("Unknown image format") from exc
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImageError(f"Invalid image: {exc}") from exc

    return RasterImage.from_array(pixels)


def downscale_image(image: RasterImage, size_limit: int) -> tuple[RasterImage, float]:
    """Shrink ``image`` so its longest side is at most ``size_limit``.

    Returns:
        The (possibly unchanged) image and the applied ratio, which is 1.0
        when no resampling happened. Detector output divided by the ratio
        maps back into the original image.

    Raises:
        DecodeFailureError: If resampling fails.
    """
    longest = max(image.width, image.height)
    if longest <= size_limit:
        return image, 1.0

    ratio = size_limit / longest
    new_width = max(1, int(image.width * ratio + 0.5))
    new_height = max(1, int(image.height * ratio + 0.5))
    try:
        resized = Image.fromarray(image.pixels).resize(
            (new_width, new_height),
            resample=Image.Resampling.BOX,
        )
        pixels = np.asarray(resized, dtype=np.uint8)
    except (OSError, ValueError, MemoryError) as exc:
        raise DecodeFailureError(f"Failed to downscale {image.width}x{image.height} image: {exc}") from exc

    logger.debug(
        "Downscaled image %dx%d -> %dx%d (ratio %.4f)",
        image.width,
        image.height,
        new_width,
        new_height,
        ratio,
    )
    return RasterImage.from_array(pixels), ratio
