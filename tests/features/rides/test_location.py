"""
Tests for ride location helpers.
"""

import pytest

from ridesync.features.rides.location import build_location_string, format_lat_lon, derive_location


class TestBuildLocationString:
    def test_skips_blank_parts(self):
        assert build_location_string(["Girona", "  ", None, "Spain"]) == "Girona, Spain"

    def test_nothing_left(self):
        assert build_location_string([None, ""]) is None


class TestFormatLatLon:
    def test_three_decimals(self):
        assert format_lat_lon(41.9794, 2.8214) == "Lat 41.979, Lon 2.821"

    @pytest.mark.parametrize("lat,lon", [(None, 2.8), (41.9, None), (float("nan"), 2.8), ("x", 2.8)])
    def test_invalid(self, lat, lon):
        assert format_lat_lon(lat, lon) is None


class TestDeriveLocation:
    def test_city_and_state(self):
        assert derive_location(city="Boulder", state="CO", country="US") == "Boulder, CO"

    def test_city_and_country(self):
        assert derive_location(city="Girona", country="Spain") == "Girona, Spain"

    def test_state_and_country(self):
        assert derive_location(state="Catalonia", country="Spain") == "Catalonia, Spain"

    def test_single_value(self):
        assert derive_location(country="Spain") == "Spain"
        assert derive_location(fallback=" Col de la Madone ") == "Col de la Madone"

    def test_coordinates_last(self):
        assert derive_location(city="  ", lat=41.9794, lon=2.8214) == "Lat 41.979, Lon 2.821"

    def test_nothing(self):
        assert derive_location() is None
