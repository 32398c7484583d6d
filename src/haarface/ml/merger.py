"""Clustering of raw detections into face boxes.

Overlapping raw detections of the same face are grouped into equivalence
classes; every class with enough members is averaged into one ``Face``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from haarface.ml.scanner import RawDetection

logger = logging.getLogger(__name__)

# Relative position and size tolerance for two detections of the same face.
POSITION_TOLERANCE: float = 0.2
SIZE_TOLERANCE: float = 1.2


@dataclass(frozen=True)
class Face:
    """A detected face in original image pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        """Box area in pixels, for callers that crop around the largest face."""
        return self.width * self.height


def _same_face(later: RawDetection, earlier: RawDetection) -> bool:
    distance = earlier.width * POSITION_TOLERANCE
    if (
        abs(later.x - earlier.x) <= distance
        and abs(later.y - earlier.y) <= distance
        and earlier.width <= later.width * SIZE_TOLERANCE
        and earlier.width * SIZE_TOLERANCE >= later.width
    ):
        return True
    return (
        later.x >= earlier.x
        and later.x + later.width <= earlier.x + earlier.width
        and later.y >= earlier.y
        and later.y + later.height <= earlier.y + earlier.height
    )


def _mean(total: int, count: int) -> int:
    """``total / count`` rounded half up, in integer arithmetic."""
    return (2 * total + count) // (2 * count)


def cluster_detections(detections: Sequence[RawDetection]) -> list[int]:
    """Assign each detection the earliest class among the earlier detections it matches.

    Returns:
        Class index per detection; classes are numbered in order of first
        appearance.
    """
    labels: list[int] = []
    class_count = 0
    for index, detection in enumerate(detections):
        matches = [labels[j] for j in range(index) if _same_face(detection, detections[j])]
        if matches:
            labels.append(min(matches))
        else:
            labels.append(class_count)
            class_count += 1
    return labels


def merge_detections(
    detections: Sequence[RawDetection],
    min_neighbours: int,
    ratio: float = 1.0,
) -> list[Face]:
    """Average each sufficiently supported class of detections into a ``Face``.

    Args:
        detections: Raw detections in scan order.
        min_neighbours: Minimum class size for a face to be reported.
        ratio: Downscale ratio applied before scanning; coordinates are
            divided by it to map back into the original image.
    """
    labels = cluster_detections(detections)
    class_count = max(labels, default=-1) + 1

    counts = [0] * class_count
    sums = [[0, 0, 0, 0] for _ in range(class_count)]
    for label, detection in zip(labels, detections, strict=True):
        counts[label] += 1
        acc = sums[label]
        acc[0] += detection.x
        acc[1] += detection.y
        acc[2] += detection.width
        acc[3] += detection.height

    faces: list[Face] = []
    for count, (sx, sy, sw, sh) in zip(counts, sums, strict=True):
        if count < min_neighbours:
            continue
        x, y, width, height = (_mean(total, count) for total in (sx, sy, sw, sh))
        if ratio != 1.0:
            x, y, width, height = (int(value / ratio + 0.5) for value in (x, y, width, height))
        faces.append(Face(x, y, width, height))

    logger.debug(
        "Merged %d raw detections into %d classes, %d faces (min_neighbours=%d)",
        len(detections),
        class_count,
        len(faces),
        min_neighbours,
    )
    return faces
