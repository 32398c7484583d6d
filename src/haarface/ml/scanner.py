"""Multi-scale sliding-window search.

For every scale level the window grid is split into column bands. Each band
is evaluated by one worker, vectorized over all of its windows with numpy:
windows rejected by stage ``k`` are dropped before stage ``k + 1`` runs, so
the cascade's early exit holds for every window. Bands write into private
buffers which are concatenated in (scale, band) order once all workers are
done, giving the same detection order as a single-threaded x-major scan.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from haarface.ml.cascade import Leaf
from haarface.ml.errors import DetectionCancelledError
from haarface.ml.integral import region_sum

if TYPE_CHECKING:
    import threading

    from numpy.typing import NDArray

    from haarface.ml.cascade import CascadeModel, Node, Tree
    from haarface.ml.integral import IntegralImages

logger = logging.getLogger(__name__)

# Edge-density bounds of the Canny pruning gate. Calibrated together with the
# trained cascades; not a tuning knob.
MIN_EDGE_DENSITY: float = 20.0
MAX_EDGE_DENSITY: float = 100.0


@dataclass(frozen=True)
class RawDetection:
    """A window that passed every stage of the cascade, in scanned-image pixels."""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class ScaleLevel:
    """Window geometry for one scale of the search."""

    scale: float
    width: int
    height: int
    step: int

    def positions(self, image_width: int, image_height: int) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
        """Window origins along each axis such that the window stays inside the image."""
        xs = np.arange(0, image_width - self.width + 1, self.step, dtype=np.int64)
        ys = np.arange(0, image_height - self.height + 1, self.step, dtype=np.int64)
        return xs, ys


@dataclass
class ScanStats:
    """Evaluation counters for one scan."""

    windows: int = 0
    pruned: int = 0
    detections: int = 0
    tree_evaluations: list[int] = field(default_factory=list)

    def add(self, other: ScanStats) -> None:
        self.windows += other.windows
        self.pruned += other.pruned
        self.detections += other.detections
        if len(self.tree_evaluations) < len(other.tree_evaluations):
            self.tree_evaluations.extend([0] * (len(other.tree_evaluations) - len(self.tree_evaluations)))
        for index, count in enumerate(other.tree_evaluations):
            self.tree_evaluations[index] += count


@dataclass(frozen=True)
class ScanResult:
    detections: list[RawDetection]
    stats: ScanStats


def _round(value: float) -> int:
    return int(value + 0.5)


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise DetectionCancelledError("Detection cancelled")


class WindowScanner:
    """Runs a validated cascade over every window of every scale level."""

    def __init__(
        self,
        cascade: CascadeModel,
        *,
        base_scale: float = 2.0,
        scale_increment: float = 1.25,
        step_fraction: float = 0.1,
        workers: int | None = None,
    ) -> None:
        if base_scale <= 0:
            raise ValueError(f"base_scale must be positive, got {base_scale}")
        if scale_increment <= 1:
            raise ValueError(f"scale_increment must be greater than 1, got {scale_increment}")
        if step_fraction <= 0:
            raise ValueError(f"step_fraction must be positive, got {step_fraction}")
        self._cascade = cascade
        self._base_scale = base_scale
        self._scale_increment = scale_increment
        self._step_fraction = step_fraction
        self._workers = max(1, workers or os.cpu_count() or 1)

    @property
    def workers(self) -> int:
        return self._workers

    def scale_levels(self, image_width: int, image_height: int) -> list[ScaleLevel]:
        """All scale levels whose window fits inside a ``image_width x image_height`` image."""
        cascade = self._cascade
        levels: list[ScaleLevel] = []
        scale = self._base_scale
        while scale * cascade.width <= image_width and scale * cascade.height <= image_height:
            width = max(1, _round(scale * cascade.width))
            height = max(1, _round(scale * cascade.height))
            step = max(1, _round(width * self._step_fraction))
            levels.append(ScaleLevel(scale, width, height, step))
            scale *= self._scale_increment
        return levels

    def scan(self, integrals: IntegralImages, cancel_event: threading.Event | None = None) -> ScanResult:
        """Evaluate every window and return the ones that pass all stages.

        Raises:
            DetectionCancelledError: If ``cancel_event`` is set before the
                scan finishes. No partial result is returned.
        """
        tasks: list[tuple[ScaleLevel, NDArray[np.int64], NDArray[np.int64]]] = []
        for level in self.scale_levels(integrals.width, integrals.height):
            xs, ys = level.positions(integrals.width, integrals.height)
            for band in np.array_split(xs, max(1, min(self._workers, xs.size))):
                if band.size:
                    tasks.append((level, band, ys))

        if self._workers == 1 or len(tasks) <= 1:
            results = [self._scan_band(integrals, level, xs, ys, cancel_event) for level, xs, ys in tasks]
        else:
            with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="haar-scan") as executor:
                futures = [
                    executor.submit(self._scan_band, integrals, level, xs, ys, cancel_event) for level, xs, ys in tasks
                ]
                try:
                    results = [future.result() for future in futures]
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        detections: list[RawDetection] = []
        stats = ScanStats(tree_evaluations=[0] * len(self._cascade.stages))
        for band_detections, band_stats in results:
            detections.extend(band_detections)
            stats.add(band_stats)

        logger.debug(
            "Scanned %d windows over %d tasks (%d pruned, %d detections)",
            stats.windows,
            len(tasks),
            stats.pruned,
            stats.detections,
        )
        return ScanResult(detections, stats)

    def passes(self, integrals: IntegralImages, x: int, y: int, level: ScaleLevel) -> bool:
        """Whether the single window at ``(x, y)`` on ``level`` passes the pruning gate and every stage."""
        xs = np.array([x], dtype=np.int64)
        ys = np.array([y], dtype=np.int64)
        detections, _ = self._scan_band(integrals, level, xs, ys, None)
        return bool(detections)

    # -- Internal -----------------------------------------------------------

    def _scan_band(
        self,
        integrals: IntegralImages,
        level: ScaleLevel,
        xs: NDArray[np.int64],
        ys: NDArray[np.int64],
        cancel_event: threading.Event | None,
    ) -> tuple[list[RawDetection], ScanStats]:
        _check_cancelled(cancel_event)

        stages = self._cascade.stages
        stats = ScanStats(tree_evaluations=[0] * len(stages))
        grid_x, grid_y = np.meshgrid(xs, ys, indexing="ij")
        x = grid_x.ravel()
        y = grid_y.ravel()
        stats.windows = int(x.size)

        width, height = level.width, level.height
        inv_area = 1.0 / (width * height)

        if integrals.gradient is not None:
            density = region_sum(integrals.gradient, x, y, width, height) * inv_area
            keep = (density >= MIN_EDGE_DENSITY) & (density <= MAX_EDGE_DENSITY)
            stats.pruned = int(x.size - np.count_nonzero(keep))
            x = x[keep]
            y = y[keep]

        # Illumination normalization over the whole window.
        mean = region_sum(integrals.sum, x, y, width, height) * inv_area
        variance = region_sum(integrals.sum_squared, x, y, width, height) * inv_area - mean * mean
        vnorm = np.maximum(np.sqrt(np.maximum(variance, 0.0)), 1.0)

        for stage_index, stage in enumerate(stages):
            if x.size == 0:
                break
            _check_cancelled(cancel_event)

            stage_value = np.zeros(x.size, dtype=np.float64)
            for tree in stage.trees:
                stage_value += self._tree_values(tree, integrals.sum, level.scale, x, y, inv_area, vnorm)
            stats.tree_evaluations[stage_index] += int(x.size) * len(stage.trees)

            passed = stage_value > stage.threshold
            x = x[passed]
            y = y[passed]
            vnorm = vnorm[passed]

        detections = [RawDetection(int(dx), int(dy), width, height) for dx, dy in zip(x, y)]
        stats.detections = len(detections)
        return detections, stats

    @staticmethod
    def _feature_sum(
        node: Node,
        table: NDArray[np.float64],
        scale: float,
        x: NDArray[np.int64],
        y: NDArray[np.int64],
    ) -> NDArray[np.float64]:
        total = np.zeros(x.size, dtype=np.float64)
        for rect in node.rectangles:
            x1 = int(scale * rect.x)
            y1 = int(scale * rect.y)
            x2 = int(scale * (rect.x + rect.width))
            y2 = int(scale * (rect.y + rect.height))
            total += rect.weight * region_sum(table, x + x1, y + y1, x2 - x1, y2 - y1)
        return total

    def _tree_values(
        self,
        tree: Tree,
        table: NDArray[np.float64],
        scale: float,
        x: NDArray[np.int64],
        y: NDArray[np.int64],
        inv_area: float,
        vnorm: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Leaf value reached by each window, walking all windows through the tree together."""
        values = np.empty(x.size, dtype=np.float64)
        current = np.zeros(x.size, dtype=np.intp)
        pending = np.arange(x.size)

        while pending.size:
            at_node = current[pending]
            next_pending: list[NDArray[np.intp]] = []
            for node_index in np.unique(at_node):
                members = pending[at_node == node_index]
                node = tree.nodes[node_index]
                feature = self._feature_sum(node, table, scale, x[members], y[members])
                goes_left = feature * inv_area < node.threshold * vnorm[members]

                for outcome, chosen in ((node.left, members[goes_left]), (node.right, members[~goes_left])):
                    if isinstance(outcome, Leaf):
                        values[chosen] = outcome.value
                    else:
                        current[chosen] = outcome.node_index
                        next_pending.append(chosen)
            pending = np.concatenate(next_pending) if next_pending else pending[:0]

        return values
