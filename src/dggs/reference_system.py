"""
Public facade of the discrete global grid reference system.

Bundles an initialized GridEngine, the precision table and the injected
reprojection capability behind the query surface used by the API:
encode/decode, precision lookups, hierarchy navigation, region search and
geometric sub-zones.
"""
import logging
from typing import Iterator, List, Optional, Union

from . import cell_id
from .containment import geometric_sub_zones, zone_has_sub_zone
from .engine import GridEngine
from .exceptions import InvalidArgumentError
from .reprojection import WGS84, DirectPosition, PyprojReprojector, Reprojector
from .search import Extent, search_zones
from .zone import Zone

logger = logging.getLogger(__name__)


class H3ReferenceSystem:
    """Hexagonal DGGRS over an aperture-7 icosahedral grid."""

    name = "H3"

    def __init__(
        self,
        engine: GridEngine,
        reprojector: Optional[Reprojector] = None,
        crs: str = WGS84
    ):
        if not engine.is_initialized:
            raise InvalidArgumentError("GridEngine must be initialized before building a reference system")
        self.engine = engine
        self.crs = crs
        self.reprojector = reprojector or PyprojReprojector()
        self.precisions = engine.precisions

    @property
    def max_level(self) -> int:
        return self.engine.max_resolution

    # -------------------------------------------------------------------------
    # Zones
    # -------------------------------------------------------------------------

    def get_zone(self, cell: Union[int, str]) -> Zone:
        """Zone for a cell id, given as integer or hexadecimal string."""
        if isinstance(cell, str):
            cell = cell_id.from_string(cell)
        elif not cell_id.is_valid(cell):
            raise InvalidArgumentError(f"Not a valid cell id: {cell!r}")
        if cell_id.resolution(cell) > self.max_level:
            raise InvalidArgumentError(
                f"Zone resolution {cell_id.resolution(cell)} exceeds max level {self.max_level}"
            )
        return Zone(cell, self.engine)

    def root_zones(self) -> List[Zone]:
        return [Zone(c, self.engine) for c in self.engine.root_cells]

    def encode(self, position: DirectPosition, level: int) -> Zone:
        """
        Zone containing `position` at `level`.

        The position is reprojected into the system CRS first when its CRS differs.

        Raises:
            TransformError: If reprojection fails
            InvalidArgumentError: If the level is out of range
        """
        self.engine.check_resolution(level)
        if position.crs != self.crs:
            position = self.reprojector(position, position.crs, self.crs)
        # x is longitude, y is latitude
        return Zone(self.engine.latlng_to_cell(position.y, position.x, level), self.engine)

    def encode_with_precision(self, position: DirectPosition, meters: float) -> Zone:
        return self.encode(position, self.level_for_precision(meters))

    def decode(self, cell: Union[int, str]) -> DirectPosition:
        """Centroid of a zone as a position in the system CRS."""
        lat, lng = self.get_zone(cell).centroid()
        return DirectPosition(lng, lat, self.crs)

    # -------------------------------------------------------------------------
    # Precision
    # -------------------------------------------------------------------------

    def precision_at_level(self, level: int) -> float:
        return self.precisions.precision_at_level(level)

    def level_for_precision(self, meters: float) -> int:
        return self.precisions.level_for_precision(meters)

    def zone_precision(self, zone: Zone) -> float:
        return self.precision_at_level(zone.resolution)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def search(self, extent: Optional[Extent], level: int) -> Iterator[Zone]:
        """Zones at `level` intersecting an envelope or polygon."""
        cells = search_zones(self.engine, extent, level)
        return (Zone(c, self.engine) for c in cells)

    def geometric_sub_zones(self, zone: Zone, relative_depth: int) -> Iterator[Zone]:
        cells = geometric_sub_zones(self.engine, zone.cell, relative_depth)
        return (Zone(c, self.engine) for c in cells)

    def zone_has_sub_zone(self, ancestor: Zone, candidate: Zone) -> bool:
        return zone_has_sub_zone(self.engine, ancestor.cell, candidate.cell)
