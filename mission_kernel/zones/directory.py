"""
Zone Directory — owner id → base coordinate.

Pure lookup over an immutable table supplied at construction. Unknown
owners resolve to the fallback anchor (mission control) instead of failing:
placement must never block on an unrecognized owner string.
"""

from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from mission_kernel.models.zone import Coordinate

# Default map geometry of the mission deployment.
CENTER_X = 5000.0
CENTER_Y = 5000.0
PLAYER_DISTANCE = 3000.0
HUB_DISTANCE = 2800.0

MISSION_CONTROL = Coordinate(x=CENTER_X, y=CENTER_Y + HUB_DISTANCE * 1.1)

DEFAULT_ZONES: Dict[str, Coordinate] = {
    "quentin": Coordinate(x=CENTER_X + PLAYER_DISTANCE, y=CENTER_Y),
    "alex": Coordinate(x=CENTER_X + PLAYER_DISTANCE * 0.7, y=CENTER_Y - PLAYER_DISTANCE * 0.7),
    "armel": Coordinate(x=CENTER_X, y=CENTER_Y - PLAYER_DISTANCE),
    "milya": Coordinate(x=CENTER_X - PLAYER_DISTANCE * 0.7, y=CENTER_Y - PLAYER_DISTANCE * 0.7),
    "hugues": Coordinate(x=CENTER_X - PLAYER_DISTANCE, y=CENTER_Y),
}


def normalize_owner(owner: Optional[str]) -> Optional[str]:
    """Owner ids are case-insensitive; blank means unassigned."""
    if owner is None:
        return None
    owner = owner.strip().lower()
    return owner or None


class ZoneDirectory:
    """Immutable owner → base coordinate mapping."""

    def __init__(
        self,
        zones: Optional[Mapping[str, Coordinate]] = None,
        fallback: Coordinate = MISSION_CONTROL,
        unassigned: Optional[Coordinate] = None,
    ):
        table = DEFAULT_ZONES if zones is None else zones
        self._zones = MappingProxyType(
            {normalize_owner(k): v.model_copy() for k, v in table.items()}
        )
        self._fallback = fallback.model_copy()
        self._unassigned = (unassigned or fallback).model_copy()

    @property
    def fallback(self) -> Coordinate:
        return self._fallback.model_copy()

    @property
    def unassigned(self) -> Coordinate:
        return self._unassigned.model_copy()

    @property
    def owners(self) -> List[str]:
        return sorted(self._zones)

    def knows(self, owner: Optional[str]) -> bool:
        return normalize_owner(owner) in self._zones

    def zone_of(self, owner: Optional[str]) -> Coordinate:
        """Base coordinate for an owner; None → unassigned anchor."""
        key = normalize_owner(owner)
        if key is None:
            return self.unassigned
        zone = self._zones.get(key)
        return zone.model_copy() if zone is not None else self.fallback

    def same_zone(self, owner_a: Optional[str], owner_b: Optional[str]) -> bool:
        return self.zone_of(owner_a) == self.zone_of(owner_b)

    def to_dict(self) -> dict:
        return {
            "zones": {k: v.model_dump() for k, v in self._zones.items()},
            "fallback": self._fallback.model_dump(),
            "unassigned": self._unassigned.model_dump(),
        }
