"""
Region query: zones at a target resolution that intersect an extent.

The walk starts from the 122 root cells and only descends into cells whose
footprint intersects the query, collecting hits at the target resolution.
The footprint used for pruning is a padded bounding box of the cell
vertices, so pruning can give false positives (extra descent) but never
false negatives. Cells crossing the antimeridian, covering a pole or lying
close to one get a full-width box.
"""
import logging
from typing import Iterator, Optional, Sequence, Tuple, Union

from shapely.geometry import Polygon, box
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep

from . import cell_id
from .engine import GridEngine
from .exceptions import InvalidArgumentError

logger = logging.getLogger(__name__)

Bbox = Tuple[float, float, float, float]
Extent = Union[BaseGeometry, Sequence[float]]

# Edges are great-circle arcs; pad vertex boxes so arcs bulging past them are still covered
BOX_PADDING_RATIO = 0.25

# Same idea for the final polygon test, kept small to limit extra matches
MATCH_PADDING_RATIO = 0.01


def to_query_geometry(extent: Extent) -> BaseGeometry:
    """
    Normalize an extent to a shapely geometry in (lng, lat) degrees.

    Accepts a (min_lng, min_lat, max_lng, max_lat) sequence or a shapely geometry.
    """
    if isinstance(extent, BaseGeometry):
        if extent.is_empty:
            raise InvalidArgumentError("Query geometry is empty")
        if not extent.is_valid:
            raise InvalidArgumentError(f"Query geometry is not valid: {extent.wkt[:80]}")
        return extent

    try:
        min_x, min_y, max_x, max_y = (float(v) for v in extent)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"Envelope must be (min_lng, min_lat, max_lng, max_lat), got: {extent!r}", e) from e
    if min_x > max_x or min_y > max_y:
        raise InvalidArgumentError(f"Envelope minimum exceeds maximum: {extent!r}")
    if min_y < -90 or max_y > 90:
        raise InvalidArgumentError(f"Envelope latitude outside [-90, 90]: {extent!r}")
    return box(min_x, min_y, max_x, max_y)


def cell_search_box(engine: GridEngine, cell: int) -> Bbox:
    """Conservative (lng, lat) box around a cell."""
    vertices = engine.cell_to_boundary(cell)
    lats = [lat for lat, _ in vertices]
    lngs = [lng for _, lng in vertices]
    min_lat, max_lat = min(lats), max(lats)
    min_lng, max_lng = min(lngs), max(lngs)

    span_lat = max_lat - min_lat
    pad_lat = span_lat * BOX_PADDING_RATIO
    min_lat, max_lat = max(-90.0, min_lat - pad_lat), min(90.0, max_lat + pad_lat)

    if max_lng - min_lng > 180.0:
        # Crosses the antimeridian, or wraps around a pole
        min_lng, max_lng = -180.0, 180.0
        level = cell_id.resolution(cell)
        if engine.latlng_to_cell(90.0, 0.0, level) == cell:
            max_lat = 90.0
        elif engine.latlng_to_cell(-90.0, 0.0, level) == cell:
            min_lat = -90.0
    else:
        pad_lng = (max_lng - min_lng) * BOX_PADDING_RATIO
        min_lng, max_lng = max(-180.0, min_lng - pad_lng), min(180.0, max_lng + pad_lng)

    # Within one cell size of a pole longitudes converge, so cover the whole cap
    if max_lat + span_lat >= 90.0:
        min_lng, max_lng, max_lat = -180.0, 180.0, 90.0
    if min_lat - span_lat <= -90.0:
        min_lng, max_lng, min_lat = -180.0, 180.0, -90.0

    return min_lng, min_lat, max_lng, max_lat


def cell_polygon(engine: GridEngine, cell: int) -> Optional[Polygon]:
    """Planar (lng, lat) polygon of a cell, or None when the planar form would be wrong."""
    vertices = engine.cell_to_boundary(cell)
    lngs = [lng for _, lng in vertices]
    if max(lngs) - min(lngs) > 180.0:
        return None
    polygon = Polygon([(lng, lat) for lat, lng in vertices])
    if not polygon.is_valid:
        return None
    return polygon


def search_zones(
    engine: GridEngine,
    extent: Optional[Extent],
    target_level: int
) -> Iterator[int]:
    """
    Cells at `target_level` intersecting `extent`.

    With no extent at level 0 the root cells are returned directly. With no
    extent at a finer level every cell of that level is listed depth-first,
    which is only practical for coarse levels.

    Raises:
        InvalidArgumentError: On a bad level or malformed extent
    """
    engine.check_resolution(target_level)
    if extent is None:
        if target_level == 0:
            return iter(engine.root_cells)
        return _all_cells(engine, target_level)
    geometry = to_query_geometry(extent)
    return _walk(engine, geometry, target_level)


def _all_cells(engine: GridEngine, target_level: int) -> Iterator[int]:
    stack = list(reversed(engine.root_cells))
    while stack:
        cell = stack.pop()
        if cell_id.resolution(cell) == target_level:
            yield cell
        else:
            stack.extend(reversed(cell_id.children(cell)))


def _walk(engine: GridEngine, geometry: BaseGeometry, target_level: int) -> Iterator[int]:
    prepared = prep(geometry)
    visited = 0
    found = 0

    # Breadth-first worklist, one level at a time
    level_cells = list(engine.root_cells)
    for level in range(target_level + 1):
        next_cells = []
        for cell in level_cells:
            visited += 1
            if not prepared.intersects(box(*cell_search_box(engine, cell))):
                continue
            if level == target_level:
                if not _matches(engine, prepared, cell):
                    continue
                found += 1
                yield cell
            else:
                next_cells.extend(cell_id.children(cell))
        level_cells = next_cells

    logger.debug(f"Zone search at level {target_level}: visited {visited} cells, matched {found}")


def _matches(engine: GridEngine, prepared, cell: int) -> bool:
    polygon = cell_polygon(engine, cell)
    if polygon is None:
        # Box test already passed
        return True
    min_x, min_y, max_x, max_y = polygon.bounds
    pad = max(max_x - min_x, max_y - min_y) * MATCH_PADDING_RATIO
    return prepared.intersects(polygon.buffer(pad))
