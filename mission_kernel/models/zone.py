"""Zone geometry — coordinates on the 2D mission map."""

import math

from pydantic import BaseModel


class Coordinate(BaseModel):
    """A point on the zone map."""

    x: float
    y: float

    def distance_to(self, other: "Coordinate") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def as_tuple(self) -> tuple:
        return (self.x, self.y)
