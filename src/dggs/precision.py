"""
Mapping between linear precision (meters) and grid resolution.

Resolution 0 splits the sphere into 122 base cells, so the root precision is
the side of a square with the same area as an average base cell. Each
refinement multiplies the cell count by ~7, so linear size shrinks by sqrt(7).
"""
import math
from typing import Tuple

from .cell_id import MAX_RESOLUTION, NUM_BASE_CELLS
from .exceptions import InvalidArgumentError

REFINEMENT_RATIO = 7


def compute_precisions(
    earth_radius_m: float,
    num_base_cells: int = NUM_BASE_CELLS,
    refinement_ratio: int = REFINEMENT_RATIO,
    levels: int = MAX_RESOLUTION + 1
) -> Tuple[float, ...]:
    """
    Average linear cell size in meters for each level.

    Args:
        earth_radius_m: Sphere radius in meters
        num_base_cells: Number of root cells
        refinement_ratio: Cell count multiplier between levels
        levels: How many levels to compute

    Returns:
        Tuple of precisions, index = level
    """
    surface = 4.0 * math.pi * earth_radius_m ** 2
    step = math.sqrt(refinement_ratio)
    precisions = [math.sqrt(surface / num_base_cells)]
    for _ in range(1, levels):
        precisions.append(precisions[-1] / step)
    return tuple(precisions)


class PrecisionTable:
    """Precomputed precision per level for one reference system."""

    def __init__(self, earth_radius_m: float, max_resolution: int = MAX_RESOLUTION):
        self.max_resolution = max_resolution
        self.precisions = compute_precisions(earth_radius_m, levels=max_resolution + 1)

    def precision_at_level(self, level: int) -> float:
        if not isinstance(level, int) or not 0 <= level <= self.max_resolution:
            raise InvalidArgumentError(
                f"Resolution must be in [0, {self.max_resolution}], got: {level}"
            )
        return self.precisions[level]

    def level_for_precision(self, meters: float) -> int:
        """
        Coarsest level whose precision is strictly below `meters`.

        Returns 0 when no level qualifies.
        """
        if meters is None or not meters > 0 or math.isinf(meters):
            raise InvalidArgumentError(f"Precision must be a positive finite number of meters, got: {meters}")
        for level, precision in enumerate(self.precisions):
            if precision < meters:
                return level
        return 0
