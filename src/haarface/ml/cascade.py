"""Haar cascade classifier model and loader.

A cascade is an ordered sequence of boosted stages. Each stage sums the leaf
values of its decision trees; each tree is an indexed node array whose
outcomes are either a ``Leaf`` value or a ``Branch`` to another node of the
same tree. The model validates itself when constructed, so a scan over a
``CascadeModel`` can never meet a dangling node reference.

Two OpenCV XML layouts are understood:

* the legacy ``opencv-haar-classifier`` layout (``size``, ``stages/trees``,
  ``left_val``/``left_node``...), and
* the current ``opencv-cascade-classifier`` layout (``stageType`` BOOST,
  ``featureType`` HAAR, ``internalNodes``/``leafValues`` plus a shared
  ``features`` list).
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import TypeAlias

from haarface.ml.errors import InvalidCascadeError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeatureRectangle:
    """Weighted rectangle in classifier space (scale 1.0)."""

    x: int
    y: int
    width: int
    height: int
    weight: float


@dataclass(frozen=True)
class Leaf:
    value: float


@dataclass(frozen=True)
class Branch:
    node_index: int


Outcome: TypeAlias = Leaf | Branch


@dataclass(frozen=True)
class Node:
    """A decision node: ``feature < threshold * vnorm`` goes left, otherwise right."""

    rectangles: tuple[FeatureRectangle, ...]
    threshold: float
    left: Outcome
    right: Outcome


@dataclass(frozen=True)
class Tree:
    """Decision tree stored as a node array; node 0 is the root."""

    nodes: tuple[Node, ...]


@dataclass(frozen=True)
class Stage:
    threshold: float
    trees: tuple[Tree, ...]


@dataclass(frozen=True)
class CascadeModel:
    """Validated, immutable cascade. Safe to share between concurrent scans."""

    width: int
    height: int
    stages: tuple[Stage, ...]

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise InvalidCascadeError(f"Invalid classifier size {self.width}x{self.height}")
        if not self.stages:
            raise InvalidCascadeError("Cascade has no stages")
        for stage_index, stage in enumerate(self.stages):
            if not stage.trees:
                raise InvalidCascadeError(f"Stage {stage_index} has no trees")
            for tree_index, tree in enumerate(stage.trees):
                self._validate_tree(tree, f"stage {stage_index}, tree {tree_index}")

    @property
    def tree_count(self) -> int:
        return sum(len(stage.trees) for stage in self.stages)

    def _validate_tree(self, tree: Tree, where: str) -> None:
        if not tree.nodes:
            raise InvalidCascadeError(f"Empty tree at {where}")

        node_count = len(tree.nodes)
        for node_index, node in enumerate(tree.nodes):
            if not node.rectangles:
                raise InvalidCascadeError(f"Node {node_index} at {where} has no feature rectangles")
            for rect in node.rectangles:
                if (
                    rect.width <= 0
                    or rect.height <= 0
                    or rect.x < 0
                    or rect.y < 0
                    or rect.x + rect.width > self.width
                    or rect.y + rect.height > self.height
                ):
                    raise InvalidCascadeError(
                        f"Feature rectangle {rect.x} {rect.y} {rect.width} {rect.height} at {where} "
                        f"lies outside the {self.width}x{self.height} classifier window"
                    )
            for outcome in (node.left, node.right):
                if isinstance(outcome, Branch) and not 0 <= outcome.node_index < node_count:
                    raise InvalidCascadeError(
                        f"Node {node_index} at {where} references missing node {outcome.node_index}"
                    )

        # Every path from the root must end in a leaf.
        visiting: set[int] = set()
        done: set[int] = set()
        stack: list[tuple[int, bool]] = [(0, False)]
        while stack:
            node_index, leaving = stack.pop()
            if leaving:
                visiting.discard(node_index)
                done.add(node_index)
                continue
            if node_index in done:
                continue
            if node_index in visiting:
                raise InvalidCascadeError(f"Cycle through node {node_index} at {where}")
            visiting.add(node_index)
            stack.append((node_index, True))
            node = tree.nodes[node_index]
            for outcome in (node.left, node.right):
                if isinstance(outcome, Branch):
                    if outcome.node_index in visiting:
                        raise InvalidCascadeError(f"Cycle through node {outcome.node_index} at {where}")
                    stack.append((outcome.node_index, False))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_cascade(path: str | Path) -> CascadeModel:
    """Read and parse a cascade definition file."""
    try:
        document = Path(path).read_bytes()
    except OSError as exc:
        raise InvalidCascadeError(f"Cannot read cascade file {path}: {exc}") from exc
    model = parse_cascade(document)
    logger.info(
        "Loaded cascade %s (%dx%d, %d stages, %d trees)",
        path,
        model.width,
        model.height,
        len(model.stages),
        model.tree_count,
    )
    return model


def parse_cascade(document: str | bytes) -> CascadeModel:
    """Parse an OpenCV Haar cascade XML document.

    Raises:
        InvalidCascadeError: On malformed XML, unsupported layouts, or any
            structural violation of the model.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise InvalidCascadeError(f"Malformed cascade document: {exc}") from exc

    cascade = root[0] if len(root) else None
    if cascade is None:
        raise InvalidCascadeError("Cascade document has no classifier element")

    if cascade.find("stageType") is not None or cascade.find("featureType") is not None:
        return _parse_boost_cascade(cascade)
    return _parse_legacy_cascade(cascade)


def _child(element: ET.Element, tag: str) -> ET.Element:
    found = element.find(tag)
    if found is None:
        raise InvalidCascadeError(f"Missing <{tag}> in <{element.tag}>")
    return found


def _text(element: ET.Element, tag: str) -> str:
    return (_child(element, tag).text or "").strip()


def _number(raw: str, what: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise InvalidCascadeError(f"Invalid {what}: {raw!r}") from None


def _integer(raw: str, what: str) -> int:
    value = _number(raw, what)
    if not value.is_integer():
        raise InvalidCascadeError(f"Invalid {what}: {raw!r}")
    return int(value)


def _parse_rects(feature: ET.Element) -> tuple[FeatureRectangle, ...]:
    tilted = feature.find("tilted")
    if tilted is not None and (tilted.text or "0").strip() not in ("0", ""):
        raise InvalidCascadeError("Tilted Haar features are not supported")

    rects: list[FeatureRectangle] = []
    for item in _child(feature, "rects").findall("_"):
        values = (item.text or "").split()
        if len(values) != 5:
            raise InvalidCascadeError(f"Feature rectangle needs 5 values, got {len(values)}")
        x, y, width, height = (_integer(v, "rectangle coordinate") for v in values[:4])
        rects.append(FeatureRectangle(x, y, width, height, _number(values[4], "rectangle weight")))
    return tuple(rects)


def _legacy_outcome(node: ET.Element, side: str) -> Outcome:
    value = node.find(f"{side}_val")
    branch = node.find(f"{side}_node")
    if value is not None and branch is not None:
        raise InvalidCascadeError(f"Node carries both {side}_val and {side}_node; cannot tell leaf from branch")
    if value is not None:
        return Leaf(_number((value.text or "").strip(), f"{side}_val"))
    if branch is not None:
        return Branch(_integer((branch.text or "").strip(), f"{side}_node"))
    raise InvalidCascadeError(f"Node has neither {side}_val nor {side}_node")


def _parse_legacy_cascade(cascade: ET.Element) -> CascadeModel:
    size = _text(cascade, "size").split()
    if len(size) != 2:
        raise InvalidCascadeError(f"Invalid classifier size {' '.join(size)!r}")
    width, height = (_integer(v, "classifier size") for v in size)

    stages: list[Stage] = []
    for xml_stage in _child(cascade, "stages").findall("_"):
        trees: list[Tree] = []
        for xml_tree in _child(xml_stage, "trees").findall("_"):
            nodes = [
                Node(
                    rectangles=_parse_rects(_child(xml_node, "feature")),
                    threshold=_number(_text(xml_node, "threshold"), "node threshold"),
                    left=_legacy_outcome(xml_node, "left"),
                    right=_legacy_outcome(xml_node, "right"),
                )
                for xml_node in xml_tree.findall("_")
            ]
            trees.append(Tree(tuple(nodes)))
        threshold = _number(_text(xml_stage, "stage_threshold"), "stage threshold")
        stages.append(Stage(threshold, tuple(trees)))

    return CascadeModel(width, height, tuple(stages))


def _boost_outcome(reference: int, leaves: list[float]) -> Outcome:
    if reference > 0:
        return Branch(reference)
    if -reference >= len(leaves):
        raise InvalidCascadeError(f"Leaf reference {reference} out of range")
    return Leaf(leaves[-reference])


def _parse_boost_cascade(cascade: ET.Element) -> CascadeModel:
    stage_type = _text(cascade, "stageType")
    feature_type = _text(cascade, "featureType")
    if stage_type != "BOOST" or feature_type != "HAAR":
        raise InvalidCascadeError(f"Unsupported cascade type {stage_type}/{feature_type}")

    width = _integer(_text(cascade, "width"), "classifier width")
    height = _integer(_text(cascade, "height"), "classifier height")
    features = [_parse_rects(item) for item in _child(cascade, "features").findall("_")]

    stages: list[Stage] = []
    for xml_stage in _child(cascade, "stages").findall("_"):
        trees: list[Tree] = []
        for weak in _child(xml_stage, "weakClassifiers").findall("_"):
            raw_nodes = _text(weak, "internalNodes").split()
            leaves = [_number(v, "leaf value") for v in _text(weak, "leafValues").split()]
            if not raw_nodes or len(raw_nodes) % 4:
                raise InvalidCascadeError("internalNodes must hold groups of 4 values")

            nodes: list[Node] = []
            for offset in range(0, len(raw_nodes), 4):
                left, right, feature_index = (_integer(v, "internal node") for v in raw_nodes[offset : offset + 3])
                if not 0 <= feature_index < len(features):
                    raise InvalidCascadeError(f"Feature index {feature_index} out of range")
                nodes.append(
                    Node(
                        rectangles=features[feature_index],
                        threshold=_number(raw_nodes[offset + 3], "node threshold"),
                        left=_boost_outcome(left, leaves),
                        right=_boost_outcome(right, leaves),
                    )
                )
            trees.append(Tree(tuple(nodes)))
        threshold = _number(_text(xml_stage, "stageThreshold"), "stage threshold")
        stages.append(Stage(threshold, tuple(trees)))

    return CascadeModel(width, height, tuple(stages))
