"""
Reads building outlines out of the SVG returned by the cadastre WMS.

The service draws every building as a closed <path> whose ``d`` attribute
uses a single, very small subset of the path grammar:

    M981283.38 368690.15l143.81 72.46 155.86 -20.01 ... z

i.e. one absolute moveto followed by relative line deltas and a close
marker.  Coordinates are planar east/north values (metres), but the SVG
y-axis points down, so every outline has to be mirrored across the middle of
the document viewBox before it can be used.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional
from xml.etree import ElementTree as ET

import numpy as np

logger = logging.getLogger(__name__)

NS = {
    'svg': 'http://www.w3.org/2000/svg',
}

# Delimiters of the supported subset: absolute moveto, relative lineto, close.
PATH_DELIMITERS = re.compile(r'[MlzZ\s]')
CLOSE_MARKER = re.compile(r'[zZ]')
# Plain decimal literal, optional exponent; no underscores, inf or nan.
NUMBER = re.compile(r'[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class FatalImportError(RuntimeError):
    """Aborts a whole import; nothing is emitted."""


class PathParseError(ValueError):
    """A single path could not be read.  The import skips it and continues."""


class MalformedNumberError(PathParseError):
    """A coordinate token is present but is not a number."""


# ---------------------------------------------------------------------------
# Geometry types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlanarPoint:
    """A planar (east, north) coordinate."""
    x: float
    y: float


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in planar coordinates."""
    min: PlanarPoint
    max: PlanarPoint

    def __post_init__(self):
        if self.min.x > self.max.x or self.min.y > self.max.y:
            raise ValueError(f"Inverted bounding box: min={self.min} max={self.max}")

    @classmethod
    def from_viewbox(cls, x: float, y: float, width: float, height: float) -> "BoundingBox":
        return cls(PlanarPoint(x, y), PlanarPoint(x + width, y + height))

    @property
    def width(self) -> float:
        return self.max.x - self.min.x

    @property
    def height(self) -> float:
        return self.max.y - self.min.y


Polygon = List[PlanarPoint]


def planar_distance(a: PlanarPoint, b: PlanarPoint) -> float:
    """Euclidean distance between two points of the same frame."""
    return math.hypot(a.x - b.x, a.y - b.y)


# ---------------------------------------------------------------------------
# Document access
# ---------------------------------------------------------------------------

def load_svg(svg_text: str) -> ET.Element:
    """Parse the raw document and return its root element."""
    try:
        return ET.fromstring(svg_text)
    except ET.ParseError as exc:
        raise FatalImportError(f"Unable to parse SVG data: {exc}") from exc


def resolve_viewbox(root: ET.Element) -> BoundingBox:
    """
    Return the rectangle declared by the root ``viewBox`` attribute.

    The viewBox is the only reference for the y-axis flip, so a missing or
    unreadable one aborts the import.
    """
    viewbox_str = (root.get("viewBox") or "").strip()
    if not viewbox_str:
        raise FatalImportError("Unable to parse SVG data (viewBox): attribute missing")

    parts = [p for p in re.split(r'[,\s]+', viewbox_str) if p]
    if len(parts) != 4:
        raise FatalImportError(
            f"Unable to parse SVG data (viewBox): expected 4 values, got {viewbox_str!r}"
        )
    try:
        vb_x, vb_y, vb_w, vb_h = (float(p) for p in parts)
    except ValueError as exc:
        raise FatalImportError(f"Unable to parse SVG data (viewBox): {viewbox_str!r}") from exc

    if vb_w < 0 or vb_h < 0 or not all(math.isfinite(v) for v in (vb_x, vb_y, vb_w, vb_h)):
        raise FatalImportError(f"Unable to parse SVG data (viewBox): invalid extent {viewbox_str!r}")

    bbox = BoundingBox.from_viewbox(vb_x, vb_y, vb_w, vb_h)
    logger.debug("viewBox: (%.2f, %.2f) + %.2f x %.2f", vb_x, vb_y, vb_w, vb_h)
    return bbox


def closed_paths(root: ET.Element) -> List[str]:
    """
    Return the ``d`` strings of every closed <path>, in document order.

    Each string is cut just before its first close marker, so only the
    outer ring of a path is kept.
    """
    paths = []
    for elem in root.iter():
        if elem.tag not in (f"{{{NS['svg']}}}path", "path"):
            continue
        d = elem.get("d", "")
        close = CLOSE_MARKER.search(d)
        if close is None:
            logger.debug("Skipping open path: %.40r", d)
            continue
        paths.append(d[:close.start()])
    return paths


# ---------------------------------------------------------------------------
# Path reconstruction
# ---------------------------------------------------------------------------

def _parse_coordinate(token: str) -> float:
    if not NUMBER.fullmatch(token):
        raise MalformedNumberError(f"Malformed coordinate {token!r}")
    value = float(token)
    if not math.isfinite(value):
        raise MalformedNumberError(f"Non-finite coordinate {token!r}")
    return value


def reconstruct_path(path_d: str) -> Optional[Polygon]:
    """
    Turn one path string into absolute planar points.

    Returns None when the path is an artifact of the service (an empty or
    missing coordinate token, or fewer than three points).  Raises
    PathParseError when the path is not in the supported subset.
    """
    path_d = path_d.strip().rstrip("zZ").rstrip()
    if not path_d.startswith("M"):
        raise PathParseError(f"Path does not start with an absolute moveto: {path_d[:20]!r}")

    # tokens[0] is the empty string in front of the leading 'M'
    tokens = PATH_DELIMITERS.split(path_d)[1:]

    steps = []
    for i in range(0, len(tokens), 2):
        pair = tokens[i:i + 2]
        if len(pair) < 2 or not pair[0] or not pair[1]:
            # some paths are just artifacts of the renderer
            return None
        steps.append((_parse_coordinate(pair[0]), _parse_coordinate(pair[1])))

    if len(steps) < 3:
        return None

    # start point followed by deltas; cumsum accumulates left to right
    absolute = np.cumsum(np.array(steps, dtype=float), axis=0)
    return [PlanarPoint(float(x), float(y)) for x, y in absolute]


# ---------------------------------------------------------------------------
# Axis correction
# ---------------------------------------------------------------------------

def correct_axis(polygon: Polygon, bbox: BoundingBox) -> Polygon:
    """Mirror *polygon* across the horizontal mid-line of *bbox* (SVG y points down)."""
    pivot = bbox.min.y + (bbox.max.y - bbox.min.y) / 2
    return [PlanarPoint(p.x, 2 * pivot - p.y) for p in polygon]
