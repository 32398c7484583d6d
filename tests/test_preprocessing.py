"""Tests for image decoding and downscaling."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING
from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from haarface.ml.errors import DecodeFailureError, InvalidImageError
from haarface.ml.preprocessing import RasterImage, decode_image, downscale_image

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def _encode(img: Image.Image, fmt: str = "PNG", **params: object) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format=fmt, **params)
    return buffer.getvalue()


class TestDecodeImage:
    def test_decode_bytes(self) -> None:
        image = decode_image(_encode(Image.new("RGB", (30, 20), color=(10, 20, 30))))
        assert (image.width, image.height) == (30, 20)
        assert image.pixel(5, 5) == (10, 20, 30)
        assert image.pixels.dtype == np.uint8

    def test_decode_path(self, tmp_path: Path) -> None:
        path = tmp_path / "image.png"
        Image.new("RGB", (12, 8), color=(200, 100, 0)).save(path)
        assert decode_image(path).pixel(0, 0) == (200, 100, 0)
        assert decode_image(str(path)).width == 12

    def test_grayscale_is_converted_to_rgb(self) -> None:
        image = decode_image(_encode(Image.new("L", (10, 10), color=77)))
        assert image.pixels.shape == (10, 10, 3)
        assert image.pixel(3, 3) == (77, 77, 77)

    def test_alpha_channel_is_dropped(self) -> None:
        image = decode_image(_encode(Image.new("RGBA", (10, 10), color=(1, 2, 3, 128))))
        assert image.pixels.shape == (10, 10, 3)

    def test_jpeg(self) -> None:
        image = decode_image(_encode(Image.new("RGB", (64, 48), color=(128, 128, 128)), "JPEG"))
        assert (image.width, image.height) == (64, 48)

    def test_exif_orientation_is_applied(self) -> None:
        img = Image.new("RGB", (40, 20))
        exif = img.getexif()
        exif[0x0112] = 6
        image = decode_image(_encode(img, "JPEG", exif=exif.tobytes()))
        assert (image.width, image.height) == (20, 40)

    def test_garbage_bytes(self) -> None:
        with pytest.raises(InvalidImageError, match="Unknown image format"):
            decode_image(b"definitely not an image")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidImageError, match="not found"):
            decode_image(tmp_path / "missing.png")

    def test_too_many_pixels(self) -> None:
        with pytest.raises(InvalidImageError, match="too large"):
            decode_image(_encode(Image.new("RGB", (100, 100))), max_pixels=9_999)

    def test_pixel_limit_is_inclusive(self) -> None:
        assert decode_image(_encode(Image.new("RGB", (100, 100))), max_pixels=10_000).width == 100


class TestRasterImage:
    def test_from_array_is_read_only(self) -> None:
        image = RasterImage.from_array(np.zeros((4, 5, 3), dtype=np.uint8))
        assert (image.width, image.height) == (5, 4)
        with pytest.raises(ValueError):
            image.pixels[0, 0, 0] = 1

    def test_from_array_leaves_input_writeable(self) -> None:
        pixels = np.zeros((2, 2, 3), dtype=np.uint8)
        RasterImage.from_array(pixels)
        pixels[0, 0, 0] = 9
        assert pixels.flags.writeable

    @pytest.mark.parametrize("shape", [(4, 5), (4, 5, 4), (4, 5, 1)])
    def test_rejects_non_rgb_shapes(self, shape: tuple[int, ...]) -> None:
        with pytest.raises(InvalidImageError, match="HxWx3"):
            RasterImage.from_array(np.zeros(shape, dtype=np.uint8))

    @pytest.mark.parametrize("shape", [(0, 5, 3), (5, 0, 3)])
    def test_rejects_zero_dimensions(self, shape: tuple[int, ...]) -> None:
        with pytest.raises(InvalidImageError, match="zero dimensions"):
            RasterImage.from_array(np.zeros(shape, dtype=np.uint8))


class TestDownscale:
    def test_small_image_is_untouched(self, uniform_image: Callable[..., RasterImage]) -> None:
        image = uniform_image(640, 480)
        scaled, ratio = downscale_image(image, 1000)
        assert scaled is image
        assert ratio == 1.0

    def test_limit_equal_to_longest_side(self, uniform_image: Callable[..., RasterImage]) -> None:
        image = uniform_image(1000, 10)
        scaled, ratio = downscale_image(image, 1000)
        assert scaled is image
        assert ratio == 1.0

    def test_longest_side_is_limited(self, uniform_image: Callable[..., RasterImage]) -> None:
        scaled, ratio = downscale_image(uniform_image(1600, 1200, value=77), 800)
        assert ratio == 0.5
        assert (scaled.width, scaled.height) == (800, 600)
        assert scaled.pixel(10, 10) == (77, 77, 77)

    def test_portrait_image(self, uniform_image: Callable[..., RasterImage]) -> None:
        scaled, ratio = downscale_image(uniform_image(333, 1000), 500)
        assert ratio == 0.5
        assert (scaled.width, scaled.height) == (167, 500)

    def test_box_filter_averages_blocks(self) -> None:
        pixels = np.zeros((4, 4, 3), dtype=np.uint8)
        pixels[0, 0] = 200
        pixels[0, 1] = 100
        scaled, _ = downscale_image(RasterImage.from_array(pixels), 2)
        assert scaled.pixel(0, 0) == (75, 75, 75)
        assert scaled.pixel(1, 1) == (0, 0, 0)

    def test_resample_failure(self, uniform_image: Callable[..., RasterImage]) -> None:
        with (
            patch("haarface.ml.preprocessing.Image.fromarray", side_effect=MemoryError("no memory")),
            pytest.raises(DecodeFailureError, match="Failed to downscale"),
        ):
            downscale_image(uniform_image(2000, 100), 1000)
