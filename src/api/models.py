from pydantic import BaseModel, Field, model_validator
from typing import Optional, List


class SearchRequest(BaseModel):
    """Region query: a (min_lon, min_lat, max_lon, max_lat) box or a polygon ring."""
    bbox: Optional[List[float]] = Field(default=None, min_length=4, max_length=4)
    polygon: Optional[List[List[float]]] = Field(default=None, min_length=3, description="Ring of [lon, lat] pairs")
    level: int = Field(..., ge=0, le=15)
    limit: int = Field(default=1000, ge=1, le=100000, description="Max zones returned")

    @model_validator(mode="after")
    def check_extent(self):
        if self.polygon is not None:
            if self.bbox is not None:
                raise ValueError("Provide either bbox or polygon, not both")
            if any(len(point) != 2 for point in self.polygon):
                raise ValueError("Polygon points must be [lon, lat] pairs")
        return self


class ElementRequest(BaseModel):
    """Element to store in the spatial index."""
    identifier: str = Field(..., min_length=1)
    minx: float
    miny: float
    maxx: float
    maxy: float
    nbenv: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def check_envelope(self):
        if self.minx > self.maxx or self.miny > self.maxy:
            raise ValueError("Envelope minimum exceeds maximum")
        return self
