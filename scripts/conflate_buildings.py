"""
Merges building outlines read from the cadastre SVG into an existing dataset.

Pipeline (see import_buildings):
    SVG text -> closed paths -> planar polygons (y flipped)
             -> intra-batch dedup (shared point identities)
             -> conflation against the existing dataset
             -> ChangeSet (new points first, then new polygons)

Two points are "the same" when they are closer than EPSILON (strictly).
Where several candidates qualify, the first one in insertion order wins, not
the nearest.  Known limitation; with a 5 cm threshold it rarely shows.

Nothing here mutates the existing dataset.  The ChangeSet is a plain value
that the caller commits (or not) as one unit.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from svg_buildings import (
    PathParseError,
    PlanarPoint,
    Polygon,
    closed_paths,
    correct_axis,
    load_svg,
    planar_distance,
    reconstruct_path,
    resolve_viewbox,
)

logger = logging.getLogger(__name__)

# Smallest distance (planar units, i.e. metres) between two distinct points.
EPSILON = 0.05

# The KD-tree query radius is padded slightly; the exact `< epsilon` test
# on the candidates is what decides a match.
SEARCH_RADIUS_PAD = 1.000001

DistanceFn = Callable[[PlanarPoint, PlanarPoint], float]
ProjectionFn = Callable[[PlanarPoint], Tuple[float, float]]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IdentifiedPoint:
    """A new point that survived intra-batch dedup."""
    ident: int
    point: PlanarPoint


@dataclass(frozen=True)
class PointRef:
    """Handle to either a new identified point or an existing dataset point."""
    ident: int
    existing: bool = False


@dataclass
class DedupedBatch:
    """All points and closed identity rings produced from one document."""
    points: List[IdentifiedPoint] = field(default_factory=list)
    polygons: List[List[int]] = field(default_factory=list)

    def point(self, ident: int) -> IdentifiedPoint:
        # identities are allocated sequentially from 1
        return self.points[ident - 1]


@dataclass(frozen=True)
class ExistingPoint:
    """A point already committed to the map."""
    ident: int
    point: PlanarPoint
    deleted: bool = False
    incomplete: bool = False

    @property
    def valid(self) -> bool:
        return not self.deleted and not self.incomplete


@dataclass
class ExistingDataset:
    """Read-only view of the points already present in the target dataset."""
    points: Sequence[ExistingPoint] = field(default_factory=list)


class Decision(Enum):
    KEEP = "keep"
    REWIRE_SOME = "rewire_some"
    REDUNDANT = "redundant"


@dataclass
class PolygonDecision:
    decision: Decision
    rewired: Dict[int, int]
    refs: List[PointRef]


@dataclass
class ConflationResult:
    """Per-point rewiring plus one decision per batch polygon (same order)."""
    rewired: Dict[int, int]
    decisions: List[PolygonDecision]


@dataclass(frozen=True)
class NewPoint:
    ident: int
    point: PlanarPoint
    geo: Optional[Tuple[float, float]] = None


@dataclass
class ChangeSet:
    """
    New entities to create, in commit order: points first, then polygons.

    ``superseded`` lists existing entities to delete.  This importer only
    ever drops its own new entities, so it is always empty.
    """
    points: List[NewPoint] = field(default_factory=list)
    polygons: List[List[PointRef]] = field(default_factory=list)
    superseded: Tuple[int, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.points and not self.polygons

    def to_dict(self) -> Dict:
        """JSON-ready representation."""
        points = []
        for p in self.points:
            entry = {"id": p.ident, "x": p.point.x, "y": p.point.y}
            if p.geo is not None:
                entry["lat"], entry["lon"] = p.geo
            points.append(entry)
        return {
            "points": points,
            "polygons": [
                {"nodes": [{"id": ref.ident, "existing": ref.existing} for ref in refs]}
                for refs in self.polygons
            ],
            "superseded": list(self.superseded),
        }


# ---------------------------------------------------------------------------
# Intra-batch dedup
# ---------------------------------------------------------------------------

def _first_within(
    vertex: PlanarPoint,
    points: Sequence[IdentifiedPoint],
    epsilon: float,
    distance: DistanceFn,
) -> Optional[IdentifiedPoint]:
    for candidate in points:
        if distance(candidate.point, vertex) < epsilon:
            return candidate
    return None


def deduplicate(
    polygons: Sequence[Polygon],
    epsilon: float = EPSILON,
    distance: DistanceFn = planar_distance,
) -> DedupedBatch:
    """
    Give every vertex of *polygons* a point identity, sharing identities
    between vertices closer than *epsilon*.

    Each vertex is compared with the points identified so far (not the final
    set), in insertion order; the first close enough is reused.  This is a
    plain O(n^2) scan: one document holds a few hundred buildings at most.

    Returned rings are closed (first identity repeated last).  Rings that
    collapse to fewer than three distinct identities are dropped.
    """
    batch = DedupedBatch()
    for index, polygon in enumerate(polygons):
        ring: List[int] = []
        for vertex in polygon:
            match = _first_within(vertex, batch.points, epsilon, distance)
            if match is None:
                match = IdentifiedPoint(len(batch.points) + 1, vertex)
                batch.points.append(match)
            if not ring or ring[-1] != match.ident:
                ring.append(match.ident)

        if len(set(ring)) < 3:
            logger.info("Polygon %d collapsed to %d distinct points, dropped", index, len(set(ring)))
            continue
        if ring[0] != ring[-1]:
            ring.append(ring[0])
        batch.polygons.append(ring)

    logger.debug(
        "Dedup: %d vertices -> %d points in %d polygons",
        sum(len(p) for p in polygons), len(batch.points), len(batch.polygons),
    )
    return batch


# ---------------------------------------------------------------------------
# Conflation
# ---------------------------------------------------------------------------

class ExistingPointIndex:
    """
    Proximity lookup over the valid points of an existing dataset.

    With the Euclidean *distance* a KD-tree narrows the candidates; among
    those strictly closer than epsilon the one earliest in the dataset wins,
    which gives exactly the answer of a linear scan in dataset order.  Any
    other distance function is checked by that linear scan directly.
    """

    def __init__(self, dataset: ExistingDataset, epsilon: float = EPSILON,
                 distance: DistanceFn = planar_distance):
        self.epsilon = epsilon
        self.distance = distance
        self.candidates = [p for p in dataset.points if p.valid]
        self.tree = None
        if self.candidates and distance is planar_distance:
            coords = np.array([(p.point.x, p.point.y) for p in self.candidates], dtype=float)
            self.tree = cKDTree(coords)

    def first_within(self, point: PlanarPoint) -> Optional[ExistingPoint]:
        if self.tree is None:
            for candidate in self.candidates:
                if self.distance(candidate.point, point) < self.epsilon:
                    return candidate
            return None
        hits = self.tree.query_ball_point((point.x, point.y), r=self.epsilon * SEARCH_RADIUS_PAD)
        for i in sorted(hits):
            candidate = self.candidates[i]
            if self.distance(candidate.point, point) < self.epsilon:
                return candidate
        return None


def conflate(
    batch: DedupedBatch,
    dataset: ExistingDataset,
    epsilon: float = EPSILON,
    distance: DistanceFn = planar_distance,
) -> ConflationResult:
    """
    Match the batch points against *dataset* and decide each polygon's fate.

    A new point within epsilon of an existing one is rewired to it and will
    never be emitted.  A polygon whose every vertex was rewired adds nothing
    and is REDUNDANT; partially rewired polygons keep their remaining new
    vertices (REWIRE_SOME); the rest are kept unchanged (KEEP).

    Rewiring can map neighbouring vertices onto the same existing point.
    Such repeats are collapsed, and a polygon left with fewer than three
    distinct points is REDUNDANT as well.
    """
    index = ExistingPointIndex(dataset, epsilon, distance)

    rewired: Dict[int, int] = {}
    for new_point in batch.points:
        match = index.first_within(new_point.point)
        if match is not None:
            rewired[new_point.ident] = match.ident

    decisions = []
    for i, ring in enumerate(batch.polygons):
        local = {ident: rewired[ident] for ident in ring if ident in rewired}
        refs: List[PointRef] = []
        for ident in ring:
            ref = PointRef(rewired[ident], existing=True) if ident in rewired else PointRef(ident)
            if not refs or refs[-1] != ref:
                refs.append(ref)

        if not local:
            decision = Decision.KEEP
        elif len(local) == len(set(ring)):
            decision = Decision.REDUNDANT
        elif len(set(refs)) < 3:
            logger.info("Polygon %d collapsed onto existing points, dropped", i)
            decision = Decision.REDUNDANT
        else:
            decision = Decision.REWIRE_SOME
        decisions.append(PolygonDecision(decision, local, refs))

    logger.debug(
        "Conflation: %d of %d points matched existing data", len(rewired), len(batch.points)
    )
    return ConflationResult(rewired, decisions)


# ---------------------------------------------------------------------------
# Change set
# ---------------------------------------------------------------------------

def emit_change_set(
    batch: DedupedBatch,
    result: ConflationResult,
    projection: Optional[ProjectionFn] = None,
) -> ChangeSet:
    """Build the ordered ChangeSet: surviving new points, then surviving polygons."""
    polygons = [d.refs for d in result.decisions if d.decision is not Decision.REDUNDANT]

    # rewired points are only ever referenced through their existing identity
    referenced = {ref.ident for refs in polygons for ref in refs if not ref.existing}

    points = []
    for new_point in batch.points:
        if new_point.ident not in referenced:
            continue
        geo = projection(new_point.point) if projection is not None else None
        points.append(NewPoint(new_point.ident, new_point.point, geo))

    return ChangeSet(points=points, polygons=polygons)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def read_polygons(svg_text: str) -> List[Polygon]:
    """
    Extract every usable building outline from *svg_text*, y-axis corrected.

    Raises FatalImportError when the document or its viewBox is unusable.
    Paths that fail to parse are skipped with a warning.
    """
    root = load_svg(svg_text)
    viewbox = resolve_viewbox(root)

    polygons = []
    paths = closed_paths(root)
    for i, path_d in enumerate(paths):
        try:
            polygon = reconstruct_path(path_d)
        except PathParseError as exc:
            logger.warning("Skipping path %d: %s", i, exc)
            continue
        if polygon is None:
            logger.info("Path %d discarded (artifact or fewer than 3 points)", i)
            continue
        polygons.append(correct_axis(polygon, viewbox))

    logger.info("Read %d building outlines from %d closed paths", len(polygons), len(paths))
    return polygons


def import_buildings(
    svg_text: str,
    dataset: ExistingDataset,
    *,
    epsilon: float = EPSILON,
    distance: DistanceFn = planar_distance,
    projection: Optional[ProjectionFn] = None,
) -> ChangeSet:
    """Run the whole import and return the entities to create."""
    polygons = read_polygons(svg_text)
    batch = deduplicate(polygons, epsilon, distance)
    result = conflate(batch, dataset, epsilon, distance)
    change_set = emit_change_set(batch, result, projection)

    redundant = sum(1 for d in result.decisions if d.decision is Decision.REDUNDANT)
    logger.info(
        "Create buildings: %d new points, %d new polygons (%d already mapped)",
        len(change_set.points), len(change_set.polygons), redundant,
    )
    return change_set
