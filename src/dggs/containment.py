"""
Geometric sub-zone search.

On an aperture-7 hexagonal grid children do not nest exactly inside their
parent: walking children(children(...)) from a zone yields cells that stick
out of the parent's spherical boundary, and misses cells of neighbouring
branches that fall inside it. This module selects descendants by geometry
instead of by digit prefix.

Algorithm for geometric_sub_zones(ancestor, depth):
1. Take the ancestor's center child one level down. All of its descendants at
   the target resolution are inside the ancestor, so they are kept as is.
2. For the zones at grid distance 1 and 2 around that center child, enumerate
   their descendants at the target resolution and keep those passing
   zone_has_sub_zone().

Rings further than 2 are never looked at: at one refinement step a cell
cannot reach further than two grid steps.
"""
import math
from typing import Iterator, List, Tuple

from . import cell_id
from .engine import GridEngine, LatLng
from .exceptions import InvalidArgumentError
from .zone import Zone

# Fraction of the way from a boundary vertex toward the cell centroid
VERTEX_NUDGE_RATIO = 0.01

# Rings around the center child that may hold sub-zones
SUB_ZONE_RING_DISTANCES = (1, 2)


def slerp(start: LatLng, end: LatLng, t: float) -> LatLng:
    """
    Spherical linear interpolation along the great circle from `start` to `end`.

    Args:
        start: (lat, lng) degrees
        end: (lat, lng) degrees
        t: 0 returns start, 1 returns end

    Returns:
        Interpolated (lat, lng) degrees
    """
    lat1, lng1 = math.radians(start[0]), math.radians(start[1])
    lat2, lng2 = math.radians(end[0]), math.radians(end[1])

    cos_omega = (math.sin(lat1) * math.sin(lat2)
                 + math.cos(lat1) * math.cos(lat2) * math.cos(lng2 - lng1))
    omega = math.acos(max(-1.0, min(1.0, cos_omega)))
    if omega == 0:
        return start

    sin_omega = math.sin(omega)
    a = math.sin((1 - t) * omega) / sin_omega
    b = math.sin(t * omega) / sin_omega

    x = a * math.cos(lat1) * math.cos(lng1) + b * math.cos(lat2) * math.cos(lng2)
    y = a * math.cos(lat1) * math.sin(lng1) + b * math.cos(lat2) * math.sin(lng2)
    z = a * math.sin(lat1) + b * math.sin(lat2)

    lat = math.atan2(z, math.sqrt(x * x + y * y))
    lng = math.atan2(y, x)
    return math.degrees(lat), math.degrees(lng)


def zone_has_sub_zone(engine: GridEngine, ancestor: int, candidate: int) -> bool:
    """
    Whether `candidate` geometrically lies in `ancestor`.

    Each candidate vertex is pulled 1% toward the candidate centroid and
    re-indexed at the ancestor's resolution. One vertex landing in the
    ancestor is enough: the candidate is small relative to the ancestor, so
    a single match is reliable.
    """
    ancestor_res = cell_id.resolution(ancestor)
    if cell_id.resolution(candidate) <= ancestor_res:
        return False

    centroid = engine.cell_to_latlng(candidate)
    for vertex in engine.cell_to_boundary(candidate):
        lat, lng = slerp(vertex, centroid, VERTEX_NUDGE_RATIO)
        if engine.latlng_to_cell(lat, lng, ancestor_res) == ancestor:
            return True
    return False


class DescendantIterator:
    """
    Restartable iterator over the descendants of some cells at one resolution.

    Uses an explicit stack, so depth never exceeds the 15 levels of the grid.
    Each call to iter() starts a fresh walk.
    """

    def __init__(self, roots: List[int], target_res: int):
        if not 0 <= target_res <= cell_id.MAX_RESOLUTION:
            raise InvalidArgumentError(
                f"Target resolution must be in [0, {cell_id.MAX_RESOLUTION}], got: {target_res}"
            )
        self.roots = list(roots)
        self.target_res = target_res

    def __iter__(self) -> Iterator[int]:
        stack = list(reversed(self.roots))
        while stack:
            cell = stack.pop()
            res = cell_id.resolution(cell)
            if res == self.target_res:
                yield cell
            elif res < self.target_res:
                stack.extend(reversed(cell_id.children(cell)))


def sub_zone_target_resolution(ancestor: int, relative_depth: int) -> int:
    """Target resolution for a relative depth, failing fast outside [0, 15]."""
    if not isinstance(relative_depth, int) or relative_depth < 0:
        raise InvalidArgumentError(f"Relative depth must be a non-negative integer, got: {relative_depth}")
    target_res = cell_id.resolution(ancestor) + relative_depth
    if not 0 <= target_res <= cell_id.MAX_RESOLUTION:
        raise InvalidArgumentError(
            f"Relative depth {relative_depth} from resolution {cell_id.resolution(ancestor)} "
            f"gives resolution {target_res}, outside [0, {cell_id.MAX_RESOLUTION}]"
        )
    return target_res


def geometric_sub_zones(engine: GridEngine, ancestor: int, relative_depth: int) -> Iterator[int]:
    """
    Cells at `relative_depth` below `ancestor` that lie inside it geometrically.

    The result is lazy. A depth of 0 yields the ancestor itself.

    Raises:
        InvalidArgumentError: If the target resolution falls outside [0, 15]
    """
    target_res = sub_zone_target_resolution(ancestor, relative_depth)
    engine.check_resolution(target_res)
    return _iter_geometric_sub_zones(engine, ancestor, target_res)


def _iter_geometric_sub_zones(engine: GridEngine, ancestor: int, target_res: int) -> Iterator[int]:
    if target_res == cell_id.resolution(ancestor):
        yield ancestor
        return

    center = cell_id.center_child(ancestor, cell_id.resolution(ancestor) + 1)
    yield from DescendantIterator([center], target_res)

    for ring_cell in _rings_around(engine, center, SUB_ZONE_RING_DISTANCES):
        for candidate in DescendantIterator([ring_cell], target_res):
            if zone_has_sub_zone(engine, ancestor, candidate):
                yield candidate


def _rings_around(engine: GridEngine, cell: int, distances: Tuple[int, ...]) -> List[int]:
    """Cells at each of the given grid distances, in distance order."""
    result = []
    for k in distances:
        ring = Zone(cell, engine).ring(k)
        result.extend(sorted(z.cell for z in ring))
    return result
