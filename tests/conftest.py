"""Shared fixtures: cascade documents and synthetic images."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
from PIL import Image

from haarface.ml.cascade import parse_cascade
from haarface.ml.preprocessing import RasterImage

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from haarface.ml.cascade import CascadeModel

# A node is a dict with "rects" [(x, y, w, h, weight), ...], "threshold", and
# "left"/"right" outcomes given as ("val", leaf_value) or ("node", index).
NodeDef = dict[str, Any]
# A stage is (stage_threshold, [tree, ...]) where a tree is a list of nodes.
StageDef = tuple[float, list[list[NodeDef]]]


def _outcome_xml(side: str, outcome: tuple[str, float]) -> str:
    kind, value = outcome
    return f"<{side}_{kind}>{value}</{side}_{kind}>"


def _node_xml(node: NodeDef) -> str:
    rects = "".join(f"<_>{x} {y} {w} {h} {weight}</_>" for x, y, w, h, weight in node["rects"])
    return (
        "<_>"
        f"<feature><rects>{rects}</rects><tilted>{node.get('tilted', 0)}</tilted></feature>"
        f"<threshold>{node['threshold']}</threshold>"
        f"{_outcome_xml('left', node['left'])}"
        f"{_outcome_xml('right', node['right'])}"
        "</_>"
    )


def build_cascade_xml(stages: list[StageDef], size: str = "24 24") -> str:
    """Legacy OpenCV Haar cascade document for the given stages."""
    stage_xml = "".join(
        "<_><trees>"
        + "".join("<_>" + "".join(_node_xml(node) for node in tree) + "</_>" for tree in trees)
        + f"</trees><stage_threshold>{threshold}</stage_threshold><parent>-1</parent><next>-1</next></_>"
        for threshold, trees in stages
    )
    return (
        '<?xml version="1.0"?>\n'
        "<opencv_storage>"
        '<test_cascade type_id="opencv-haar-classifier">'
        f"<size>{size}</size><stages>{stage_xml}</stages>"
        "</test_cascade>"
        "</opencv_storage>"
    )


# Bright centre third minus the whole window. Normalized by the window's
# standard deviation this reaches its maximum (sqrt(2) ~ 1.414) only when the
# middle third is fully bright and the flanks are fully dark.
STRIPE_NODE: NodeDef = {
    "rects": [(0, 0, 24, 24, -1.0), (8, 0, 8, 24, 3.0)],
    "threshold": 1.35,
    "left": ("val", -1.0),
    "right": ("val", 1.0),
}


@pytest.fixture()
def cascade_xml() -> Callable[..., str]:
    """Builder for legacy cascade documents."""
    return build_cascade_xml


@pytest.fixture()
def stripe_cascade_xml() -> str:
    """One stage, one tree, one node: fires on a dark square with a bright middle third."""
    return build_cascade_xml([(0.0, [[STRIPE_NODE]])])


@pytest.fixture()
def stripe_cascade(stripe_cascade_xml: str) -> CascadeModel:
    return parse_cascade(stripe_cascade_xml)


@pytest.fixture()
def stripe_cascade_file(tmp_path: Path, stripe_cascade_xml: str) -> Path:
    path = tmp_path / "stripe_cascade.xml"
    path.write_text(stripe_cascade_xml)
    return path


def make_target_pixels(
    width: int,
    height: int,
    targets: Sequence[tuple[int, int, int]] = (),
    background: int = 0,
    bright: int = 255,
) -> np.ndarray:
    """RGB array with a solid background and a target square at each ``(x, y, size)``.

    A target is black with a vertical bar of grey level ``bright`` over its
    middle third.
    """
    pixels = np.full((height, width, 3), background, dtype=np.uint8)
    for x, y, size in targets:
        third = size // 3
        pixels[y : y + size, x : x + size] = 0
        pixels[y : y + size, x + third : x + 2 * third] = bright
    return pixels


@pytest.fixture()
def target_image() -> Callable[..., RasterImage]:
    """Factory for synthetic images containing stripe targets."""

    def factory(
        width: int,
        height: int,
        targets: Sequence[tuple[int, int, int]] = (),
        background: int = 0,
        bright: int = 255,
    ) -> RasterImage:
        return RasterImage.from_array(make_target_pixels(width, height, targets, background, bright))

    return factory


@pytest.fixture()
def uniform_image() -> Callable[..., RasterImage]:
    """Factory for single-colour images."""

    def factory(width: int, height: int, value: int = 128) -> RasterImage:
        return RasterImage.from_array(np.full((height, width, 3), value, dtype=np.uint8))

    return factory


@pytest.fixture()
def png_bytes() -> Callable[[RasterImage], bytes]:
    """Encode a ``RasterImage`` as PNG."""

    def encode(image: RasterImage) -> bytes:
        buffer = io.BytesIO()
        Image.fromarray(image.pixels).save(buffer, format="PNG")
        return buffer.getvalue()

    return encode
