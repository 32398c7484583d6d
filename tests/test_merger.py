"""Tests for detection clustering and merging."""

from __future__ import annotations

import pytest

from haarface.ml.merger import Face, cluster_detections, merge_detections
from haarface.ml.scanner import RawDetection


def _raw(x: int, y: int, size: int) -> RawDetection:
    return RawDetection(x, y, size, size)


class TestClustering:
    def test_nearby_detections_share_a_class(self) -> None:
        detections = [_raw(100, 100, 48), _raw(104, 102, 48), _raw(98, 99, 50)]
        assert cluster_detections(detections) == [0, 0, 0]

    def test_distant_detections_stay_apart(self) -> None:
        detections = [_raw(0, 0, 48), _raw(200, 0, 48), _raw(0, 200, 48)]
        assert cluster_detections(detections) == [0, 1, 2]

    def test_size_mismatch_stays_apart(self) -> None:
        # Same origin, but 48 * 1.2 < 60.
        assert cluster_detections([_raw(10, 10, 48), _raw(10, 10, 60)]) == [0, 1]

    def test_contained_detection_joins_earlier(self) -> None:
        assert cluster_detections([_raw(0, 0, 100), _raw(40, 40, 20)]) == [0, 0]

    def test_result_depends_on_order(self) -> None:
        # The tolerance is relative to the earlier detection, so swapping the
        # pair changes the outcome.
        assert cluster_detections([_raw(40, 40, 20), _raw(0, 0, 100)]) == [0, 1]

    def test_detection_matching_two_classes(self) -> None:
        # The third detection matches both earlier ones.
        detections = [_raw(0, 0, 50), _raw(18, 0, 50), _raw(9, 0, 50)]
        assert cluster_detections(detections) == [0, 1, 0]

    def test_joins_earliest_matching_class(self) -> None:
        # The last detection misses class 0's first member, matches the class 1
        # detection first, and also matches a later member of class 0.
        detections = [_raw(0, 0, 100), _raw(30, 0, 100), _raw(5, 0, 100), _raw(22, 0, 100)]
        assert cluster_detections(detections) == [0, 1, 0, 0]

    def test_earliest_class_absorbs_the_average(self) -> None:
        detections = [_raw(0, 0, 100), _raw(30, 0, 100), _raw(5, 0, 100), _raw(22, 0, 100)]
        assert merge_detections(detections, min_neighbours=2) == [Face(9, 0, 100, 100)]

    def test_empty(self) -> None:
        assert cluster_detections([]) == []


class TestMerge:
    def test_cluster_is_averaged(self) -> None:
        detections = [_raw(100, 100, 48), _raw(104, 102, 48), _raw(98, 99, 50)]
        assert merge_detections(detections, min_neighbours=1) == [Face(101, 100, 49, 49)]

    def test_mean_rounds_half_up(self) -> None:
        detections = [RawDetection(1, 0, 20, 20), RawDetection(2, 0, 21, 21)]
        assert merge_detections(detections, min_neighbours=2) == [Face(2, 0, 21, 21)]

    def test_small_classes_are_dropped(self) -> None:
        detections = [_raw(0, 0, 48), _raw(2, 2, 48), _raw(300, 300, 48)]
        assert merge_detections(detections, min_neighbours=2) == [Face(1, 1, 48, 48)]

    @pytest.mark.parametrize("min_neighbours", [1, 2, 3])
    def test_threshold_is_inclusive(self, min_neighbours: int) -> None:
        detections = [_raw(10, 10, 30)] * 3
        assert merge_detections(detections, min_neighbours) == [Face(10, 10, 30, 30)]

    def test_faces_in_order_of_first_appearance(self) -> None:
        detections = [_raw(500, 500, 48), _raw(0, 0, 48), _raw(502, 500, 48)]
        faces = merge_detections(detections, min_neighbours=1)
        assert faces == [Face(501, 500, 48, 48), Face(0, 0, 48, 48)]

    def test_ratio_maps_back_to_original(self) -> None:
        faces = merge_detections([_raw(50, 50, 48)], min_neighbours=1, ratio=0.5)
        assert faces == [Face(100, 100, 96, 96)]

    def test_ratio_rounds_to_nearest(self) -> None:
        faces = merge_detections([RawDetection(10, 20, 30, 31)], min_neighbours=1, ratio=0.3)
        assert faces == [Face(33, 67, 100, 103)]

    def test_merging_separated_faces_is_idempotent(self) -> None:
        first = merge_detections([_raw(0, 0, 48), _raw(200, 0, 60), _raw(0, 300, 30)], min_neighbours=1)
        again = merge_detections(
            [RawDetection(face.x, face.y, face.width, face.height) for face in first],
            min_neighbours=1,
        )
        assert again == first

    def test_empty(self) -> None:
        assert merge_detections([], min_neighbours=1) == []

    def test_face_area(self) -> None:
        assert Face(0, 0, 12, 10).area == 120
