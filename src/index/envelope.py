"""2-D envelopes and the measures the R*-tree heuristics are built on."""
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


@dataclass(frozen=True)
class Envelope:
    """Axis-aligned bounding box."""
    minx: float
    miny: float
    maxx: float
    maxy: float

    def __post_init__(self):
        values = (self.minx, self.miny, self.maxx, self.maxy)
        if any(math.isnan(v) for v in values):
            raise ValueError(f"Envelope contains NaN: {values}")
        if self.minx > self.maxx or self.miny > self.maxy:
            raise ValueError(f"Envelope minimum exceeds maximum: {values}")

    @classmethod
    def of_point(cls, x: float, y: float) -> "Envelope":
        return cls(x, y, x, y)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return self.minx, self.miny, self.maxx, self.maxy

    @property
    def area(self) -> float:
        return (self.maxx - self.minx) * (self.maxy - self.miny)

    @property
    def margin(self) -> float:
        """Half perimeter."""
        return (self.maxx - self.minx) + (self.maxy - self.miny)

    @property
    def center(self) -> Tuple[float, float]:
        return (self.minx + self.maxx) / 2.0, (self.miny + self.maxy) / 2.0

    def intersects(self, other: "Envelope") -> bool:
        return (self.minx <= other.maxx and other.minx <= self.maxx
                and self.miny <= other.maxy and other.miny <= self.maxy)

    def contains(self, other: "Envelope") -> bool:
        return (self.minx <= other.minx and other.maxx <= self.maxx
                and self.miny <= other.miny and other.maxy <= self.maxy)

    def union(self, other: "Envelope") -> "Envelope":
        return Envelope(
            min(self.minx, other.minx), min(self.miny, other.miny),
            max(self.maxx, other.maxx), max(self.maxy, other.maxy)
        )

    def enlargement(self, other: "Envelope") -> float:
        """Area increase needed to also cover `other`."""
        return self.union(other).area - self.area

    def overlap(self, other: "Envelope") -> float:
        """Area of the intersection, 0 when disjoint."""
        dx = min(self.maxx, other.maxx) - max(self.minx, other.minx)
        dy = min(self.maxy, other.maxy) - max(self.miny, other.miny)
        if dx < 0 or dy < 0:
            return 0.0
        return dx * dy

    def min_distance(self, x: float, y: float) -> float:
        """Euclidean distance from a point to the box, 0 inside."""
        dx = max(self.minx - x, 0.0, x - self.maxx)
        dy = max(self.miny - y, 0.0, y - self.maxy)
        return math.hypot(dx, dy)


def union_all(envelopes: Iterable[Envelope]) -> Optional[Envelope]:
    """Envelope covering all given envelopes, None for an empty input."""
    result = None
    for env in envelopes:
        result = env if result is None else result.union(env)
    return result
