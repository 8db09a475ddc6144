"""
Zone value type and grid hierarchy navigation.

A Zone wraps a cell id together with the grid engine it belongs to. The
engine is shared, never owned; equality and hashing only look at the id.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

from . import cell_id
from .engine import GridEngine, LatLng
from .exceptions import InvalidArgumentError


@dataclass(frozen=True)
class Zone:
    """A single cell of the grid hierarchy."""
    cell: int
    engine: GridEngine = field(compare=False, repr=False)

    @property
    def id(self) -> str:
        """Hexadecimal zone identifier."""
        return cell_id.to_string(self.cell)

    @property
    def resolution(self) -> int:
        return cell_id.resolution(self.cell)

    @property
    def base_cell(self) -> int:
        return cell_id.base_cell(self.cell)

    @property
    def is_pentagon(self) -> bool:
        return cell_id.is_pentagon(self.cell)

    def _wrap(self, cell: int) -> "Zone":
        return Zone(cell, self.engine)

    # -------------------------------------------------------------------------
    # Hierarchy
    # -------------------------------------------------------------------------

    def parent(self, level: Optional[int] = None) -> "Zone":
        """
        Ancestor at `level` (default: one level up).

        Raises:
            InvalidArgumentError: If `level` is finer than this zone, or this
                zone is a root and no level is given
        """
        if level is None:
            if self.resolution == 0:
                raise InvalidArgumentError(f"Root zone {self.id} has no parent")
            level = self.resolution - 1
        return self._wrap(cell_id.parent(self.cell, level))

    def parents(self) -> FrozenSet["Zone"]:
        """Direct parent as a set; empty for root zones."""
        if self.resolution == 0:
            return frozenset()
        return frozenset({self.parent()})

    def children(self) -> FrozenSet["Zone"]:
        """Direct children; empty at the engine's max resolution."""
        if self.resolution >= self.engine.max_resolution:
            return frozenset()
        return frozenset(self._wrap(c) for c in cell_id.children(self.cell))

    def center_child(self, level: Optional[int] = None) -> "Zone":
        """Descendant at `level` (default: one level down) following center digits."""
        if level is None:
            level = self.resolution + 1
        self.engine.check_resolution(level)
        return self._wrap(cell_id.center_child(self.cell, level))

    def ring(self, k: int) -> FrozenSet["Zone"]:
        """
        Zones at exactly grid distance `k`.

        Computed as disk(k) minus disk(k - 1), which stays correct around
        pentagons where the hollow ring walk breaks down.
        """
        if not isinstance(k, int) or k < 0:
            raise InvalidArgumentError(f"Ring distance must be a non-negative integer, got: {k}")
        if k == 0:
            return frozenset({self})
        outer = self.engine.grid_disk(self.cell, k)
        inner = self.engine.grid_disk(self.cell, k - 1)
        return frozenset(self._wrap(c) for c in outer - inner)

    def neighbors(self) -> FrozenSet["Zone"]:
        """Immediately adjacent zones (5 for pentagons, 6 otherwise)."""
        return self.ring(1)

    # -------------------------------------------------------------------------
    # Geometry
    # -------------------------------------------------------------------------

    def centroid(self) -> LatLng:
        return self.engine.cell_to_latlng(self.cell)

    def boundary(self) -> List[LatLng]:
        """Closed boundary polygon as (lat, lng) vertices."""
        vertices = self.engine.cell_to_boundary(self.cell)
        return vertices + vertices[:1]

    def vertices(self) -> List[LatLng]:
        """Boundary vertices without the closing point."""
        return self.engine.cell_to_boundary(self.cell)

    def area(self) -> float:
        """Area in square meters."""
        return self.engine.cell_area(self.cell)

    def precision(self) -> float:
        """Average linear size in meters of zones at this resolution."""
        return self.engine.precisions.precision_at_level(self.resolution)

    def bounds(self) -> Tuple[float, float, float, float]:
        """(min_lng, min_lat, max_lng, max_lat) of the boundary vertices."""
        lats = [lat for lat, _ in self.vertices()]
        lngs = [lng for _, lng in self.vertices()]
        return min(lngs), min(lats), max(lngs), max(lats)

    def __str__(self) -> str:
        return self.id
