"""
Grid engine context.

Thin, explicitly constructed wrapper around the h3 library, which provides
the icosahedral grid math (point to cell, cell centroids and boundaries,
grid disks). The hierarchy itself (parents, children, digits) is handled by
`cell_id`; only geometry goes through here.

Construct one engine at process start and pass it to every component:

    engine = GridEngine().initialize()
    zone = Zone(engine.latlng_to_cell(37.7749, -122.4194, 9), engine)
"""
import logging
from typing import List, Set, Tuple

from h3.api import basic_int as h3

from . import cell_id
from .exceptions import InvalidArgumentError
from .precision import PrecisionTable

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]

# Authalic earth radius used by H3 (km -> m)
EARTH_RADIUS_M = 6371.007180918475 * 1000.0


class GridEngine:
    """Owns the grid math backend and the grid-wide constants."""

    def __init__(self, max_resolution: int = cell_id.MAX_RESOLUTION):
        if not 0 <= max_resolution <= cell_id.MAX_RESOLUTION:
            raise InvalidArgumentError(
                f"max_resolution must be in [0, {cell_id.MAX_RESOLUTION}], got: {max_resolution}"
            )
        self.max_resolution = max_resolution
        self.earth_radius_m = EARTH_RADIUS_M
        self.precisions = PrecisionTable(self.earth_radius_m, max_resolution)
        self._root_cells: Tuple[int, ...] = ()
        self._initialized = False

    def initialize(self) -> "GridEngine":
        """Load the root cell set. Must be called once before use."""
        if self._initialized:
            return self
        self._root_cells = tuple(sorted(h3.get_res0_cells()))
        if len(self._root_cells) != cell_id.NUM_BASE_CELLS:
            raise RuntimeError(
                f"Grid backend reported {len(self._root_cells)} base cells, expected {cell_id.NUM_BASE_CELLS}"
            )
        self._initialized = True
        logger.info(f"Grid engine initialized (max resolution {self.max_resolution})")
        return self

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("GridEngine.initialize() must be called before use")

    def check_resolution(self, level: int) -> None:
        if not isinstance(level, int) or not 0 <= level <= self.max_resolution:
            raise InvalidArgumentError(
                f"Resolution must be in [0, {self.max_resolution}], got: {level}"
            )

    @property
    def root_cells(self) -> Tuple[int, ...]:
        """The 122 resolution-0 cells."""
        self._ensure_initialized()
        return self._root_cells

    def latlng_to_cell(self, lat: float, lng: float, level: int) -> int:
        """Cell containing a WGS84 point at `level`."""
        self._ensure_initialized()
        self.check_resolution(level)
        try:
            return h3.latlng_to_cell(lat, lng, level)
        except ValueError as e:
            raise InvalidArgumentError(f"Cannot index point ({lat}, {lng}) at resolution {level}", e) from e

    def cell_to_latlng(self, cell: int) -> LatLng:
        """Centroid of a cell as (lat, lng) degrees."""
        self._ensure_initialized()
        return h3.cell_to_latlng(cell)

    def cell_to_boundary(self, cell: int) -> List[LatLng]:
        """Boundary vertices of a cell as (lat, lng) degrees, not closed."""
        self._ensure_initialized()
        return list(h3.cell_to_boundary(cell))

    def cell_area(self, cell: int) -> float:
        """Cell area in square meters."""
        self._ensure_initialized()
        return h3.cell_area(cell, unit="m^2")

    def grid_disk(self, cell: int, k: int) -> Set[int]:
        """All cells within grid distance k, pentagon-safe."""
        self._ensure_initialized()
        return set(h3.grid_disk(cell, k))
