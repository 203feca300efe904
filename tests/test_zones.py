"""Tests for the Zone Directory."""

import math

import pytest

from mission_kernel.models.zone import Coordinate
from mission_kernel.zones.directory import MISSION_CONTROL, ZoneDirectory, normalize_owner


class TestNormalizeOwner:
    @pytest.mark.parametrize("raw,expected", [
        ("Alex", "alex"),
        ("  MILYA ", "milya"),
        ("", None),
        ("   ", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_owner(raw) == expected


class TestZoneDirectory:
    def setup_method(self):
        self.directory = ZoneDirectory()

    def test_default_owners(self):
        assert self.directory.owners == ["alex", "armel", "hugues", "milya", "quentin"]

    def test_known_owner_zone(self):
        assert self.directory.zone_of("alex") == Coordinate(x=7100, y=2900)
        assert self.directory.zone_of("quentin") == Coordinate(x=8000, y=5000)

    def test_lookup_is_case_insensitive(self):
        assert self.directory.zone_of("ALEX") == self.directory.zone_of("alex")
        assert self.directory.knows(" Alex ")

    def test_unknown_owner_falls_back(self):
        assert not self.directory.knows("zed")
        assert self.directory.zone_of("zed") == MISSION_CONTROL

    def test_unassigned_anchor(self):
        anchor = self.directory.zone_of(None)
        assert anchor == MISSION_CONTROL
        assert anchor.x == 5000
        assert math.isclose(anchor.y, 8080)

    def test_returned_coordinates_are_copies(self):
        zone = self.directory.zone_of("alex")
        zone.x = 0
        assert self.directory.zone_of("alex").x == 7100

    def test_custom_table(self):
        directory = ZoneDirectory(
            zones={"Bob": Coordinate(x=1, y=2)},
            fallback=Coordinate(x=0, y=0),
            unassigned=Coordinate(x=9, y=9),
        )
        assert directory.zone_of("bob") == Coordinate(x=1, y=2)
        assert directory.zone_of("alex") == Coordinate(x=0, y=0)
        assert directory.zone_of(None) == Coordinate(x=9, y=9)

    def test_same_zone(self):
        assert self.directory.same_zone("zed", None)
        assert not self.directory.same_zone("alex", "milya")

    def test_to_dict(self):
        data = self.directory.to_dict()
        assert set(data["zones"]) == set(self.directory.owners)
        assert data["fallback"] == MISSION_CONTROL.model_dump()
