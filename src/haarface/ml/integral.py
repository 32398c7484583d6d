"""Summed-area tables over image luma and edge magnitude.

Tables are indexed ``[y, x]`` and carry a leading zero row and column, so a
table for a ``W x H`` image has shape ``(H + 1, W + 1)`` and the sum over the
rectangle ``(x, y, w, h)`` is::

    T[y + h, x + w] - T[y, x + w] - T[y + h, x] + T[y, x]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from haarface.ml.preprocessing import RasterImage

# Gaussian-like smoothing kernel applied before the gradient; weights sum to 159.
SMOOTHING_KERNEL: NDArray[np.float64] = np.array(
    [
        [2, 4, 5, 4, 2],
        [4, 9, 12, 9, 4],
        [5, 12, 15, 12, 5],
        [4, 9, 12, 9, 4],
        [2, 4, 5, 4, 2],
    ],
    dtype=np.float64,
)
SMOOTHING_WEIGHT: float = 159.0

# Width of the zeroed gradient frame. Smoothing leaves the outer 2 px at zero,
# so the 3x3 kernels only see valid smoothed values from the third pixel in.
GRADIENT_BORDER: int = 3


@dataclass(frozen=True)
class IntegralImages:
    """Integral tables for one detection pass. Read-only while scanning."""

    width: int
    height: int
    sum: NDArray[np.float64]
    sum_squared: NDArray[np.float64]
    gradient: NDArray[np.float64] | None = None


def compute_luma(pixels: NDArray[np.uint8]) -> NDArray[np.float64]:
    """Perceptual luma ``(30R + 59G + 11B) / 100`` of an HxWx3 RGB array."""
    rgb = pixels.astype(np.float64)
    return (30.0 * rgb[..., 0] + 59.0 * rgb[..., 1] + 11.0 * rgb[..., 2]) / 100.0


def integrate(values: NDArray[np.float64]) -> NDArray[np.float64]:
    """2-D prefix sum of ``values`` with a synthetic zero row and column."""
    height, width = values.shape
    table = np.zeros((height + 1, width + 1), dtype=np.float64)
    table[1:, 1:] = values.cumsum(axis=0).cumsum(axis=1)
    return table


def region_sum(
    table: NDArray[np.float64],
    x: int | NDArray[np.int64],
    y: int | NDArray[np.int64],
    width: int,
    height: int,
) -> float | NDArray[np.float64]:
    """Sum over ``width x height`` rectangles at ``(x, y)``; ``x``/``y`` may be index arrays."""
    x2 = x + width
    y2 = y + height
    return table[y2, x2] - table[y, x2] - table[y2, x] + table[y, x]


def smooth(luma: NDArray[np.float64]) -> NDArray[np.float64]:
    """5x5 weighted smoothing; pixels within 2 px of an edge are left at zero."""
    height, width = luma.shape
    out = np.zeros_like(luma)
    if height < 5 or width < 5:
        return out

    acc = np.zeros((height - 4, width - 4), dtype=np.float64)
    for dy in range(5):
        for dx in range(5):
            acc += SMOOTHING_KERNEL[dy, dx] * luma[dy : height - 4 + dy, dx : width - 4 + dx]
    out[2:-2, 2:-2] = acc / SMOOTHING_WEIGHT
    return out


def gradient_magnitude(smoothed: NDArray[np.float64]) -> NDArray[np.float64]:
    """``|gx| + |gy|`` from two 3x3 directional kernels, zeroed near the borders."""
    height, width = smoothed.shape
    out = np.zeros_like(smoothed)
    if height <= 2 * GRADIENT_BORDER or width <= 2 * GRADIENT_BORDER:
        return out

    def at(dy: int, dx: int) -> NDArray[np.float64]:
        return smoothed[1 + dy : height - 1 + dy, 1 + dx : width - 1 + dx]

    gx = -at(-1, -1) + at(-1, 1) - 2.0 * at(0, -1) + 2.0 * at(0, 1) - at(1, -1) + at(1, 1)
    gy = at(-1, -1) + 2.0 * at(-1, 0) + at(-1, 1) - at(1, -1) - 2.0 * at(1, 0) - at(1, 1)
    out[1:-1, 1:-1] = np.abs(gx) + np.abs(gy)

    b = GRADIENT_BORDER
    out[:b, :] = 0.0
    out[-b:, :] = 0.0
    out[:, :b] = 0.0
    out[:, -b:] = 0.0
    return out


def build_gradient_integral(luma: NDArray[np.float64]) -> NDArray[np.float64]:
    return integrate(gradient_magnitude(smooth(luma)))


def build_integral_images(image: RasterImage, with_gradient: bool = False) -> IntegralImages:
    """Build the sum, squared-sum and (optionally) gradient tables for ``image``."""
    luma = compute_luma(image.pixels)
    return IntegralImages(
        width=image.width,
        height=image.height,
        sum=integrate(luma),
        sum_squared=integrate(luma * luma),
        gradient=build_gradient_integral(luma) if with_gradient else None,
    )
