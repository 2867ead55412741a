"""
Tests for geometry, code generation and fare/carbon helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from gocab.services.ride_store import generate_otp, generate_pickup_code, generate_ride_id
from gocab.utils import pricing
from gocab.utils.helpers import (
    bounding_box,
    calculate_distance,
    calculate_eta,
    generate_numeric_code,
    truncate_to_millis,
    validate_coordinates,
)


class TestGeometry:
    def test_distance_to_self_is_zero(self):
        assert calculate_distance(37.77, -122.41, 37.77, -122.41) == 0

    def test_distance_is_symmetric(self):
        a = calculate_distance(37.7749, -122.4194, 37.8044, -122.2712)
        b = calculate_distance(37.8044, -122.2712, 37.7749, -122.4194)
        assert a == pytest.approx(b)

    def test_distance_one_degree_of_latitude(self):
        """One degree of latitude is about 111 km."""
        assert calculate_distance(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)

    def test_bounding_box_contains_circle(self):
        min_lat, max_lat, min_lon, max_lon = bounding_box(37.7749, -122.4194, 5)

        assert min_lat < 37.7749 < max_lat
        assert min_lon < -122.4194 < max_lon
        # The box edges are at least 5 km away from the centre
        north_edge = calculate_distance(37.7749, -122.4194, max_lat, -122.4194)
        assert north_edge == pytest.approx(5, rel=1e-6)
        assert calculate_distance(37.7749, -122.4194, 37.7749, max_lon) >= 5 - 1e-9

    def test_bounding_box_near_pole_spans_all_longitudes(self):
        _, max_lat, min_lon, max_lon = bounding_box(89.99, 10, 5)
        assert max_lat == 90.0
        assert (min_lon, max_lon) == (-180.0, 180.0)

    def test_bounding_box_across_antimeridian_spans_all_longitudes(self):
        _, _, min_lon, max_lon = bounding_box(0, 179.99, 5)
        assert (min_lon, max_lon) == (-180.0, 180.0)

    @pytest.mark.parametrize(
        "lat, lon, valid",
        [
            (0, 0, True),
            (90, 180, True),
            (-90, -180, True),
            (90.0001, 0, False),
            (0, -180.5, False),
            ("abc", 0, False),
            (None, 0, False),
            (float("nan"), 0, False),
        ],
    )
    def test_validate_coordinates(self, lat, lon, valid):
        is_valid, message = validate_coordinates(lat, lon)
        assert is_valid is valid
        assert (message == "") is valid

    def test_eta_rounds_up_minutes(self):
        assert calculate_eta(0) == 0
        assert calculate_eta(15) == 30
        assert calculate_eta(15.1) == 31


class TestCodes:
    def test_numeric_code_has_no_leading_zero(self):
        for _ in range(200):
            code = generate_numeric_code(4)
            assert len(code) == 4
            assert code.isdigit()
            assert code[0] != "0"

    def test_ride_codes(self):
        assert len(generate_pickup_code()) == 6
        assert len(generate_otp()) == 4

        ride_id = generate_ride_id()
        prefix, millis, suffix = ride_id.split("_")
        assert prefix == "RIDE"
        assert millis.isdigit()
        assert len(suffix) == 6

    def test_ride_ids_are_unique(self):
        assert len({generate_ride_id() for _ in range(500)}) == 500


class TestTimestamps:
    def test_truncate_to_millis(self):
        value = datetime(2024, 5, 1, 12, 0, 0, 123456)
        assert truncate_to_millis(value) == datetime(2024, 5, 1, 12, 0, 0, 123000)

    def test_truncate_converts_aware_to_naive_utc(self):
        value = datetime(2024, 5, 1, 14, 0, 0, 999999, tzinfo=timezone(timedelta(hours=2)))
        assert truncate_to_millis(value) == datetime(2024, 5, 1, 12, 0, 0, 999000)


class TestPricing:
    def test_fare_breakdown(self):
        fare = pricing.calculate_fare(10, 20)
        assert fare["base_fare"] == 3.50
        assert fare["distance_fee"] == 22.50
        assert fare["time_fee"] == 3.00
        assert fare["total"] == 29.00

    def test_carbon_for_eight_and_a_half_miles(self):
        """8.5 miles saves about 2.1 kg of CO2."""
        assert pricing.calculate_carbon_saved(8.5) == 2.06

    def test_tree_equivalent(self):
        assert pricing.tree_equivalent(2.06) == round(2.06 / 21.77, 2)
        assert pricing.tree_equivalent(21.77) == 1.0

    def test_negative_inputs_are_clamped(self):
        assert pricing.calculate_carbon_saved(-3) == 0
        assert pricing.calculate_fare(-1, -1)["total"] == pricing.BASE_FARE
