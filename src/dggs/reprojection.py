"""
Reprojection capability injected into the reference system.

The DGGS code never does projection math itself. Anything callable as
`reproject(point, source_crs, target_crs) -> point` can be plugged in;
the default delegates to pyproj.
"""
import math
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from pyproj import Transformer
from pyproj.exceptions import CRSError, ProjError

from .exceptions import TransformError

WGS84 = "EPSG:4326"


@dataclass(frozen=True)
class DirectPosition:
    """A 2-D position, x/y in the axis order of `crs` with longitude first for geographic CRSes."""
    x: float
    y: float
    crs: str = WGS84


Reprojector = Callable[[DirectPosition, str, str], DirectPosition]


class PyprojReprojector:
    """Reprojector backed by cached pyproj transformers (always_xy axis order)."""

    def __init__(self):
        self._transformers: Dict[Tuple[str, str], Transformer] = {}

    def _get_transformer(self, source_crs: str, target_crs: str) -> Transformer:
        key = (source_crs, target_crs)
        transformer = self._transformers.get(key)
        if transformer is None:
            try:
                transformer = Transformer.from_crs(source_crs, target_crs, always_xy=True)
            except CRSError as e:
                raise TransformError(f"Unknown CRS in {source_crs} -> {target_crs}", e) from e
            self._transformers[key] = transformer
        return transformer

    def __call__(self, point: DirectPosition, source_crs: str, target_crs: str) -> DirectPosition:
        if source_crs == target_crs:
            return DirectPosition(point.x, point.y, target_crs)
        transformer = self._get_transformer(source_crs, target_crs)
        try:
            x, y = transformer.transform(point.x, point.y, errcheck=True)
        except ProjError as e:
            raise TransformError(
                f"Failed to reproject ({point.x}, {point.y}) from {source_crs} to {target_crs}", e
            ) from e
        if not (math.isfinite(x) and math.isfinite(y)):
            raise TransformError(
                f"Reprojection of ({point.x}, {point.y}) from {source_crs} to {target_crs} is not finite"
            )
        return DirectPosition(x, y, target_crs)
