"""Haar cascade face detector.

Pipeline: decode -> downscale (optional) -> integral images -> window scan
-> detection merge. Faces are returned in original image pixels.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from haarface.ml.integral import build_integral_images
from haarface.ml.merger import merge_detections
from haarface.ml.preprocessing import DEFAULT_MAX_IMAGE_PIXELS, decode_image, downscale_image
from haarface.ml.scanner import WindowScanner

if TYPE_CHECKING:
    import threading
    from pathlib import Path

    from haarface.ml.cascade import CascadeModel
    from haarface.ml.merger import Face
    from haarface.ml.preprocessing import RasterImage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionConfig:
    """Tuning knobs of a detection call."""

    base_scale: float = 2.0
    scale_increment: float = 1.25
    step_fraction: float = 0.1
    min_neighbours: int = 2
    do_canny_pruning: bool = True
    image_size_limit: int = 1000

    def __post_init__(self) -> None:
        if self.base_scale <= 0:
            raise ValueError(f"base_scale must be positive, got {self.base_scale}")
        if self.scale_increment <= 1:
            raise ValueError(f"scale_increment must be greater than 1, got {self.scale_increment}")
        if self.step_fraction <= 0:
            raise ValueError(f"step_fraction must be positive, got {self.step_fraction}")
        if self.min_neighbours < 1:
            raise ValueError(f"min_neighbours must be at least 1, got {self.min_neighbours}")
        if self.image_size_limit < 1:
            raise ValueError(f"image_size_limit must be at least 1, got {self.image_size_limit}")


class FaceDetector(Protocol):
    """Protocol for face detectors."""

    def detect(self, image: RasterImage, cancel_event: threading.Event | None = None) -> list[Face]:
        """Detect faces in a decoded image.

        Args:
            image: Decoded RGB image.
            cancel_event: Set to abort the call; no partial result is returned.

        Returns:
            Face boxes in the image's pixel coordinates, possibly empty.
        """
        ...


class HaarFaceDetector:
    """Face detector backed by a validated Haar cascade.

    The cascade is shared read-only, so one detector may serve concurrent
    calls; every call owns its image and integral tables.
    """

    def __init__(
        self,
        cascade: CascadeModel,
        config: DetectionConfig | None = None,
        *,
        workers: int | None = None,
        max_image_pixels: int = DEFAULT_MAX_IMAGE_PIXELS,
    ) -> None:
        self._cascade = cascade
        self._config = config or DetectionConfig()
        self._max_image_pixels = max_image_pixels
        self._scanner = WindowScanner(
            cascade,
            base_scale=self._config.base_scale,
            scale_increment=self._config.scale_increment,
            step_fraction=self._config.step_fraction,
            workers=workers,
        )

    @property
    def config(self) -> DetectionConfig:
        return self._config

    @property
    def cascade(self) -> CascadeModel:
        return self._cascade

    def detect(self, image: RasterImage, cancel_event: threading.Event | None = None) -> list[Face]:
        """Detect faces in ``image``.

        Raises:
            DecodeFailureError: If downscaling fails.
            DetectionCancelledError: If ``cancel_event`` is set mid-scan.
        """
        config = self._config
        started = time.monotonic()

        scanned, ratio = downscale_image(image, config.image_size_limit)
        integrals = build_integral_images(scanned, with_gradient=config.do_canny_pruning)
        result = self._scanner.scan(integrals, cancel_event)
        faces = merge_detections(result.detections, config.min_neighbours, ratio)

        logger.info(
            "Detected %d faces in %dx%d image (scanned at %dx%d, %d windows, %d raw) in %.3fs",
            len(faces),
            image.width,
            image.height,
            scanned.width,
            scanned.height,
            result.stats.windows,
            len(result.detections),
            time.monotonic() - started,
        )
        return faces

    def detect_file(self, path: str | Path, cancel_event: threading.Event | None = None) -> list[Face]:
        """Decode the image at ``path`` and detect faces in it.

        Raises:
            InvalidImageError: If the file cannot be decoded.
        """
        return self.detect(decode_image(path, self._max_image_pixels), cancel_event)

    def detect_bytes(self, data: bytes, cancel_event: threading.Event | None = None) -> list[Face]:
        """Decode raw image bytes and detect faces in them."""
        return self.detect(decode_image(data, self._max_image_pixels), cancel_event)


def detect(image_path: str | Path, cascade: CascadeModel, config: DetectionConfig | None = None) -> list[Face]:
    """Detect faces in the image file at ``image_path``.

    Returns:
        A possibly empty list of faces in original image pixels.

    Raises:
        DetectorError: The single failure that aborted the call.
    """
    return HaarFaceDetector(cascade, config).detect_file(image_path)
