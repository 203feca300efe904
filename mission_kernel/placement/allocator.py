"""
Spatial Allocator — non-overlapping placement inside an owner's zone.

Probe order: concentric rings around the zone base. Ring k has
`slots_per_ring` slots at radius base_radius + k*ring_spacing; slot s sits at
angle s*angle_step + k*ring_stagger. The first candidate whose distance to
every obstacle (occupied positions and the base point itself) is at least
`min_separation` wins.

If every probed slot collides, the allocator gives up the separation
guarantee and returns a point on a wider ring at a pseudo-random angle. It
never fails the caller.
"""

import math
import random
from typing import Iterable, Iterator, List, Optional

from mission_kernel.models.engine import AllocatorConfig
from mission_kernel.models.zone import Coordinate
from mission_kernel.zones.directory import ZoneDirectory


class AllocationResult:
    """A chosen coordinate and how it was found."""

    def __init__(self, position: Coordinate, attempt: Optional[int], fallback: bool):
        self.position = position
        self.attempt = attempt
        self.fallback = fallback

    def to_dict(self) -> dict:
        return {
            "position": self.position.model_dump(),
            "attempt": self.attempt,
            "fallback": self.fallback,
        }


class SpatialAllocator:
    def __init__(
        self,
        directory: ZoneDirectory,
        config: Optional[AllocatorConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.directory = directory
        self.config = config or AllocatorConfig()
        # Only the fallback path draws from this.
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_rings * self.config.slots_per_ring

    def slot(self, base: Coordinate, attempt: int) -> Coordinate:
        """Candidate for a probe index. Pure function of (base, attempt)."""
        cfg = self.config
        ring, slot_in_ring = divmod(attempt, cfg.slots_per_ring)
        radius = cfg.base_radius + ring * cfg.ring_spacing
        angle = slot_in_ring * cfg.angle_step + ring * cfg.ring_stagger
        return self._place(base, radius, angle)

    def probe_sequence(self, owner: Optional[str]) -> Iterator[Coordinate]:
        base = self.directory.zone_of(owner)
        for attempt in range(self.max_attempts):
            yield self.slot(base, attempt)

    def allocate(self, owner: Optional[str], occupied: Iterable[Coordinate]) -> Coordinate:
        return self.allocate_detailed(owner, occupied).position

    def allocate_detailed(
        self, owner: Optional[str], occupied: Iterable[Coordinate]
    ) -> AllocationResult:
        base = self.directory.zone_of(owner)
        obstacles: List[Coordinate] = list(occupied) + [base]

        for attempt, candidate in enumerate(self.probe_sequence(owner)):
            if self._is_clear(candidate, obstacles):
                return AllocationResult(candidate, attempt, fallback=False)

        return AllocationResult(self._fallback(base), None, fallback=True)

    def _fallback(self, base: Coordinate) -> Coordinate:
        cfg = self.config
        ring = cfg.max_rings + cfg.fallback_ring_offset
        radius = cfg.base_radius + ring * cfg.ring_spacing
        return self._place(base, radius, self._rng.uniform(0.0, 2 * math.pi))

    def _place(self, base: Coordinate, radius: float, angle: float) -> Coordinate:
        x = base.x + math.cos(angle) * radius
        y = base.y + math.sin(angle) * radius
        if self.config.round_positions:
            x, y = float(round(x)), float(round(y))
        return Coordinate(x=x, y=y)

    def _is_clear(self, candidate: Coordinate, obstacles: List[Coordinate]) -> bool:
        limit = self.config.min_separation
        return all(candidate.distance_to(o) >= limit for o in obstacles)

